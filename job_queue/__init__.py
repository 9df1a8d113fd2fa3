"""
Job Queue — durable hand-off between ingestion and the answer worker.

- Queue Store: waiting / processing / dead lists (Redis in production,
  in-memory for development)
- Idempotency Guard: suppresses duplicate delivery of the same job
"""
