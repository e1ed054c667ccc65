"""
commission_batch -- Automated commission debt collection.

Runs the scheduled collection cycle: balance debit from the provider's
processor sub-account first, off-session card charge as fallback.

Architecture:
    commission_batch/ is a top-level package.  Nothing in commission_kernel/
    imports from commission_batch.  Scheduling is external; the host's cron
    (or scripts/run_collection_cycle.py) invokes CollectionCycle.run().
"""
