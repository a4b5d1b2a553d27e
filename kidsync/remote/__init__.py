"""Clients for the identity provider and the remote document mirror."""
