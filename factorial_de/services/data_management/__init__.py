"""Data management services: count import, filtering and snapshots."""

from factorial_de.services.data_management.count_table_service import (
    CountTableService,
)

__all__ = ["CountTableService"]
