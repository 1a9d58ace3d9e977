"""Domain services: registry, storage, rollups, alerts and ingestion."""
