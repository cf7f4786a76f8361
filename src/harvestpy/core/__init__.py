"""Framework-free domain: sampling, aggregation and the harvest cycle."""
