"""HTTP transport for the tiered quota service."""
