from .monitor import Alert, AlertConfig, AlertSeverity, CoordinationMonitor

__all__ = ["Alert", "AlertConfig", "AlertSeverity", "CoordinationMonitor"]
