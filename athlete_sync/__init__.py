"""athlete-sync: Garmin OAuth connection and webhook ingestion service."""
