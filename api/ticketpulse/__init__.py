"""TicketPulse: weekly helpdesk ingestion, metric snapshots and tiered retention."""

__version__ = "0.1.0"
