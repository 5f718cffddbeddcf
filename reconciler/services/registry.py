# reconciler/services/registry.py
from typing import Callable, Dict, Tuple, Type

from pydantic import BaseModel

# event type -> (handler, model that data.object parses into)
HANDLERS: Dict[str, Tuple[Callable, Type[BaseModel]]] = {}


def handles(event_type: str, model: Type[BaseModel]):
    def register(fn):
        HANDLERS[event_type] = (fn, model)
        return fn
    return register
