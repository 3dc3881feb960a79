from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from aidispatch.core.exceptions import UnknownCategoryError
from aidispatch.core.logging import get_logger
from aidispatch.models.policy import PolicyConditions, TaskPolicy
from aidispatch.models.routing import DispatchSignals
from aidispatch.routing.model_registry import ModelRegistry

logger = get_logger(__name__)


class TaskPolicyTable:
    """Maps a task category to its primary model, fallback chain and timeout."""

    def __init__(self, policies: List[TaskPolicy], registry: ModelRegistry):
        self._policies: Dict[str, TaskPolicy] = {p.task_category: p for p in policies}
        self._registry = registry
        self._check_references()

    @classmethod
    def from_yaml(cls, path: str, registry: ModelRegistry) -> "TaskPolicyTable":
        p = Path(path)
        if not p.exists():
            logger.warning("task_policies_missing", path=path)
            return cls([], registry)

        with open(p) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, registry)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], registry: ModelRegistry) -> "TaskPolicyTable":
        policies = []
        for category, entry in (data.get("task_policies") or {}).items():
            entry = dict(entry)
            conditions = PolicyConditions(**(entry.pop("applicability", None) or {}))
            policies.append(TaskPolicy(task_category=category, applicability=conditions, **entry))
        table = cls(policies, registry)
        logger.info("task_policies_loaded", count=len(policies))
        return table

    def _check_references(self) -> None:
        # Unknown model ids are tolerated here; the dispatcher skips them as config_missing.
        for policy in self._policies.values():
            missing = [m for m in policy.chain if m not in self._registry]
            if missing:
                logger.warning(
                    "task_policy_unknown_models",
                    task_category=policy.task_category,
                    models=missing,
                )
            for sibling in (policy.vision_variant, policy.text_variant):
                if sibling and sibling not in self._policies:
                    logger.warning(
                        "task_policy_unknown_sibling",
                        task_category=policy.task_category,
                        sibling=sibling,
                    )

    def resolve(self, task_category: str) -> TaskPolicy:
        policy = self._policies.get(task_category)
        if policy is None:
            raise UnknownCategoryError(task_category)
        return policy

    def rewrite(self, task_category: str, signals: DispatchSignals) -> str:
        """Promote a text category to its vision sibling when the request carries images."""
        policy = self._policies.get(task_category)
        if policy is None or not signals.has_images or not policy.vision_variant:
            return task_category

        sibling = self._policies.get(policy.vision_variant)
        if sibling is None or not self._registry.supports_vision(sibling.primary_model_id):
            return task_category

        logger.info(
            "task_category_rewritten",
            from_category=task_category,
            to_category=sibling.task_category,
            image_count=signals.image_count,
        )
        return sibling.task_category

    def text_category(self, task_category: str) -> str:
        """Inverse of rewrite(): the non-vision category to use when images are unusable."""
        policy = self._policies.get(task_category)
        if policy is None or not policy.text_variant or policy.text_variant not in self._policies:
            return task_category
        return policy.text_variant

    def find(self, task_category: str) -> Optional[TaskPolicy]:
        return self._policies.get(task_category)

    def list_categories(self) -> List[str]:
        return sorted(self._policies.keys())
