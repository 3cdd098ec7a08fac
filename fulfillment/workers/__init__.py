"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .stock_task_worker import start_stock_task_worker
from .sweeper_worker import start_sweeper_worker

__all__ = ["start_outbox_publisher", "start_stock_task_worker", "start_sweeper_worker"]
