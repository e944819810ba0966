"""Collaborator adapters and pipeline services."""
