"""OPMS <-> NetSuite sync engine.

Provides the pieces of the bidirectional sync pipeline:
- ChangeDetector: Outbox writer, manual triggers and polling backup
- SyncQueueStore: Durable job queue with coalescing and atomic claims
- DataTransformer: Eligibility gating and OPMS -> NetSuite payload building
- RemoteAdapter / NetSuiteAdapter: Idempotent upsert with loop-prevention marker and dry-run
- QueueProcessor: Claim, transform, upsert and retry state machine
- WebhookReceiver: NetSuite pricing edits written back into OPMS

Architecture: OPMS and NetSuite share no state; the processor and the
webhook receiver communicate only through the database.
"""
