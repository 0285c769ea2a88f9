"""Call ingestion and the Redis Streams publisher."""
