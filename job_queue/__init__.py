"""
Job Queue — Durable typed work queues drained by single-flight worker loops.

- Producers ENQUEUE items (ingest API, campaign launch, fan-out, receipts)
- Worker loops DEQUEUE one item per queue type per tick and run a handler
- The ordering cache is an in-memory heap (dev) or Redis sorted sets (prod)
"""
