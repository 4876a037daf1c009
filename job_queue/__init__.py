"""
Work scheduling — queue, consumer and worker primitives.

- Webhooks PUBLISH inbound events to a queue
- The consumer drains them onto a pool keyed by contact
- Tickers drive the campaign and CRM schedulers
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
