"""
Entity resolution.

The entity registry (legal entities, sites, product families, suppliers)
lives outside the kernel. The kernel only needs to know whether an id
resolves inside a given tenant.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entity:
    tenant_id: str
    entity_id: str
    entity_type: str
    name: str = ""


class EntityResolver(ABC):
    """Tenant-scoped lookup of subject entities."""

    @abstractmethod
    def resolve(self, tenant_id: str, entity_id: str) -> Optional[Entity]:
        """Return the entity, or None when it does not exist in this tenant."""


class StaticEntityResolver(EntityResolver):
    """In-process registry, used by tests and single-node deployments."""

    def __init__(self):
        self._entities: Dict[Tuple[str, str], Entity] = {}
        self._lock = threading.Lock()

    def register(self, entity: Entity) -> Entity:
        with self._lock:
            self._entities[(entity.tenant_id, entity.entity_id)] = entity
        logger.debug(f"Registered entity {entity.entity_id} for tenant {entity.tenant_id}")
        return entity

    def resolve(self, tenant_id: str, entity_id: str) -> Optional[Entity]:
        with self._lock:
            return self._entities.get((tenant_id, entity_id))
