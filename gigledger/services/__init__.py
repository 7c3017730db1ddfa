"""Business services for the ingestion and posting pipeline."""
