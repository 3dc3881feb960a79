"""
Model Registry

Static catalog of callable backends and their capabilities/costs, loaded
once from models.yaml. Every capability or cost question (vision support,
image limits, per-call estimate) is answered here, so a new backend is
added by editing the YAML, never the dispatch logic.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from aidispatch.core.exceptions import ModelNotFoundError
from aidispatch.core.logging import get_logger
from aidispatch.models.catalog import ModelDescriptor

logger = get_logger(__name__)


class ModelRegistry:
    def __init__(self, descriptors: Iterable[ModelDescriptor] = ()):
        self._models: Dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            self._models[descriptor.model_id] = descriptor

    @classmethod
    def from_yaml(cls, path: str) -> "ModelRegistry":
        p = Path(path)
        if not p.exists():
            logger.warning("models_config_missing", path=path)
            return cls()

        with open(p) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelRegistry":
        descriptors = []
        for model_id, entry in (data.get("models") or {}).items():
            descriptors.append(ModelDescriptor(model_id=model_id, **entry))
        registry = cls(descriptors)
        logger.info("models_loaded", count=len(descriptors))
        return registry

    def get(self, model_id: str) -> ModelDescriptor:
        descriptor = self._models.get(model_id)
        if descriptor is None:
            raise ModelNotFoundError(model_id)
        return descriptor

    def find(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._models.get(model_id)

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._models

    def all(self) -> List[ModelDescriptor]:
        return list(self._models.values())

    def free_models(self) -> List[ModelDescriptor]:
        return [m for m in self._models.values() if m.is_free]

    def paid_models(self, vision: Optional[bool] = None) -> List[ModelDescriptor]:
        """Models with a non-zero per-call estimate, optionally filtered on vision support."""
        return [
            m for m in self._models.values()
            if not m.is_free and (vision is None or m.supports_vision == vision)
        ]

    def vision_models(self) -> List[ModelDescriptor]:
        return [m for m in self._models.values() if m.supports_vision]

    @staticmethod
    def cheapest(models: Iterable[ModelDescriptor]) -> Optional[ModelDescriptor]:
        ordered = sorted(models, key=lambda m: m.cost_per_call_estimate)
        return ordered[0] if ordered else None

    def supports_vision(self, model_id: str) -> bool:
        descriptor = self._models.get(model_id)
        return bool(descriptor and descriptor.supports_vision)
