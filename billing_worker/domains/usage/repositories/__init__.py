from .usage_repository import UsageRepository, WindowTotals

__all__ = ["UsageRepository", "WindowTotals"]
