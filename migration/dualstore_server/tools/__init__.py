"""
Operator tools for DualStore.

- parity_cli: parity checks, one-shot outbox flush, requeue, conflict listing,
  cache purge
"""
