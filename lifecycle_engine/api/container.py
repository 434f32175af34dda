#lifecycle_engine\api\container.py
from lifecycle_engine.orchestrator.lifecycle import CustomerLifecycleManager


def get_lifecycle_manager() -> CustomerLifecycleManager:
    # Deferred so importing the app does not build production collaborators
    from lifecycle_engine.container import lifecycle_manager
    return lifecycle_manager
