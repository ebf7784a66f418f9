"""Multi-stage workflows built on top of background jobs.

Workflow state is held in memory by the orchestrator; each stage runs as an
ordinary job tagged with the workflow id and stage name.
"""
