from __future__ import annotations

from prometheus_client import Counter

GENERATIONS = Counter("cs_generations_total", "Generation turns by outcome", ["outcome"])
CLASSIFIED_ERRORS = Counter("cs_classified_errors_total", "Classified HTTP failures by kind", ["kind"])
MALFORMED_CHUNKS = Counter("cs_malformed_chunks_total", "NDJSON lines dropped as malformed")
