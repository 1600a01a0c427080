"""Collaborators that fetch, classify and prepare workload sources."""
