"""Background workers for async processing."""
from .expiry_sweeper import ExpirySweeper, SweepReport, start_expiry_sweeper
from .outbox_publisher import start_outbox_publisher

__all__ = ["ExpirySweeper", "SweepReport", "start_expiry_sweeper", "start_outbox_publisher"]
