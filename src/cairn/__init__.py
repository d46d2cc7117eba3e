"""
Cairn: uniform resource ingestion and orchestration.

Converges filesystem trees, mailbox messages, issue-tracker data and fleet
telemetry into one content-addressed, deduplicated resource store, and
records every ingestion run and orchestration step as auditable state.
"""

__version__ = "0.1.0"
