from smart_todo.middleware.metrics import MetricsMiddleware


__all__ = ["MetricsMiddleware"]
