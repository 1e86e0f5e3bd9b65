"""cache/ -- In-process TTL caches. Imports only from core/."""
