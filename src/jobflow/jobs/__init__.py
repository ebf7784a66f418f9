"""Priority job queue, processor dispatch and durable job records.

The live queue is in memory and owned by a single actor thread; the durable
``background_jobs`` table only records outcomes and is consulted at startup to
recover work left behind by a previous process.
"""
