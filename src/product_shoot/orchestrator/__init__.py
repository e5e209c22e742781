"""Generation task orchestrator.

One submission becomes K independent image slots. The orchestrator
reserves K credits up front, runs every slot through a primary/fallback
backend cascade, persists each outcome as it lands, and settles the
reservation exactly once: confirm when all slots succeed, partial refund
for the failed ones, full refund when none succeed.

A client keeps a small task handle so a restarted process can reattach
to a live task, or rebuild a read-only view from the durable record.
"""
