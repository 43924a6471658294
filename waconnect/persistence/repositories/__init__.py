"""Repositories. Methods flush; services own the transaction."""
