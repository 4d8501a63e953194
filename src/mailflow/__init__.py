"""Email ingestion, dedup and automation pipeline for a logistics ERP."""
