"""Work-order documents."""

from dispatcher.documents.work_order import WorkOrder, WorkOrderRenderer

__all__ = ["WorkOrder", "WorkOrderRenderer"]
