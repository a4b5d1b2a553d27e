"""On-device persistence: the SQLite store and small key/value files."""
