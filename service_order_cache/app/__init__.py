"""
Order cache node package.

Answers order lookups from a local on-disk cache, falls back to the origin
on a miss and shares resolved orders with peer nodes over the bus.

- app.main: FastAPI service and the getOrder endpoint
- app.coordinator: lookup state machine and bus delivery handling
- app.store: file-backed local store
- app.bus: Redis and in-process publish/subscribe clients
- app.origin: stub and HTTP origin fetchers
- app.models: Order, cache record and bus envelope models
"""
