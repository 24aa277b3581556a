"""
Session Gateway Core - connection lifecycle, retry, watchdog, auth store.

LAZY LOADING: submodules import each other and the config layer, so nothing
is imported at package import time. Names below resolve on first access.
"""

__all__ = [
    "LifecycleManager",
    "InitOutcome",
    "SessionPhase",
    "RetryBackoffController",
    "RetryPolicy",
    "WatchdogSupervisor",
    "AuthStoreGuard",
    "ProcessReaper",
    "ReadinessFacade",
    "ReadinessSnapshot",
]

_lazy_modules = {
    "LifecycleManager": (".lifecycle_manager", "LifecycleManager"),
    "InitOutcome": (".lifecycle_manager", "InitOutcome"),
    "SessionPhase": (".session_state", "SessionPhase"),
    "RetryBackoffController": (".retry_controller", "RetryBackoffController"),
    "RetryPolicy": (".retry_controller", "RetryPolicy"),
    "WatchdogSupervisor": (".watchdog", "WatchdogSupervisor"),
    "AuthStoreGuard": (".auth_store", "AuthStoreGuard"),
    "ProcessReaper": (".process_reaper", "ProcessReaper"),
    "ReadinessFacade": (".readiness", "ReadinessFacade"),
    "ReadinessSnapshot": (".readiness", "ReadinessSnapshot"),
}

_loaded_modules = {}


def __getattr__(name: str):
    """Lazy import handler - imports modules only when accessed."""
    if name in _lazy_modules:
        if name not in _loaded_modules:
            module_path, attr_name = _lazy_modules[name]
            import importlib
            module = importlib.import_module(module_path, package=__name__)
            _loaded_modules[name] = getattr(module, attr_name)
        return _loaded_modules[name]
    raise AttributeError(f"module 'session_gateway.core' has no attribute '{name}'")
