"""Linked accounts, their session blobs and the login handshake."""
