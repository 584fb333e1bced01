"""Cross-system reconciliation between the source and target systems.

Modules:
    schemas: Records and validated webhook payloads.
    field_mapping: Declarative mapping table and tracked fields.
    users: Person directory spanning both systems.
    normalize: Comparable forms of dates and assignee sets.
    loop_guard: Echo-loop detection.
    webhook_auth: Signature, handshake and token checks.
    ingest: Webhook payloads -> internal notifications.
    clients: Remote system clients.
    engine: The reconciliation engine.
    flows: Dispatcher handlers running engine operations as traced flows.
"""
