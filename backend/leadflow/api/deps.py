from functools import lru_cache

from leadflow.services.engine import AutomationEngine, build_engine
from leadflow.services.mongo_store import MongoExecutionStore
from leadflow.services.store import ExecutionStore


@lru_cache
def get_store() -> ExecutionStore:
    return MongoExecutionStore()


@lru_cache
def get_engine() -> AutomationEngine:
    return build_engine(store=get_store())
