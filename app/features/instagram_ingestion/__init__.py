"""
Instagram event ingestion feature package.

Keeps every layer of the ingestion flow co-located (domain models, service
clients, pipeline stages, repository, orchestrator and jobs).
"""
