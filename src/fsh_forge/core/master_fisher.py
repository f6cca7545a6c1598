"""
Chained resolver

Fishes in the package being exported first, then the authoring working set
(the tank), then the loaded base definitions, so local artifacts shadow
external ones with the same name.
"""

import logging
from typing import Any, Dict, List, Optional

from .definitions import FHIRDefinitions, StructureCache
from .fishable import STRUCTURE_TYPES, FhirType, Fishable, Metadata
from .structure import StructureDefinition

logger = logging.getLogger(__name__)


class MasterFisher(Fishable):
    """
    Resolver over the package, the tank and the base definitions

    Args:
        tank: Authoring working set; knows names and parents but not FHIR types
        fhir: Loaded base definitions
        pkg: Artifacts exported so far
        cache: Resolved-structure cache for this compilation
    """

    def __init__(
        self,
        tank: Optional[Fishable] = None,
        fhir: Optional[FHIRDefinitions] = None,
        pkg: Optional[Fishable] = None,
        cache: Optional[StructureCache] = None,
    ):
        self.tank = tank
        self.fhir = fhir
        self.pkg = pkg
        self.cache = cache if cache is not None else StructureCache()

    @property
    def fhir_version(self) -> str:
        return self.fhir.fhir_version if self.fhir is not None else ""

    def _fishables(self) -> List[Fishable]:
        return [f for f in (self.pkg, self.tank, self.fhir) if f is not None]

    def fish_for_fhir(self, item: str, *types: FhirType) -> Optional[Dict[str, Any]]:
        """
        Find definition JSON in the package, else in the base definitions

        An item that is still only in the tank yields None, so JSON and
        metadata lookups never disagree about which definition an item names.
        """
        result = self.pkg.fish_for_fhir(item, *types) if self.pkg is not None else None
        if result is not None:
            return result
        if self.tank is not None and self.tank.fish_for_metadata(item, *types) is not None:
            return None
        return self.fhir.fish_for_fhir(item, *types) if self.fhir is not None else None

    def fish_for_metadata(self, item: str, *types: FhirType) -> Optional[Metadata]:
        fishables = self._fishables()
        for fishable in fishables:
            result = fishable.fish_for_metadata(item, *types)
            if result is None:
                continue
            if fishable is self.tank and result.sd_type is None:
                result.sd_type = self.find_sd_type(result, types, fishables)
            return result
        return None

    def find_sd_type(
        self, metadata: Metadata, types: tuple, fishables: List[Fishable]
    ) -> Optional[str]:
        """
        Walk parents until one declares its FHIR type

        A loop in the parent chain is logged and yields None.
        """
        history = [metadata]
        sd_type, parent = metadata.sd_type, metadata.parent
        while sd_type is None and parent is not None:
            parent_result = None
            for fishable in fishables:
                parent_result = fishable.fish_for_metadata(parent, *types)
                if parent_result is not None:
                    break
            if parent_result is None:
                return None
            if any(
                md.url == parent_result.url and md.name == parent_result.name for md in history
            ):
                chain = " < ".join(md.name or md.id for md in history + [parent_result])
                logger.error(f"Circular dependency detected on parent relationships: {chain}")
                return None
            history.append(parent_result)
            sd_type, parent = parent_result.sd_type, parent_result.parent
        return sd_type

    def fish_for_structure(self, item: str) -> Optional[StructureDefinition]:
        """
        Fetch a fully resolved element tree

        Resolved definitions are kept in the cache; every call returns an
        independent tree.
        """
        metadata = self.fish_for_metadata(item, *STRUCTURE_TYPES)
        key = (metadata.url or metadata.id) if metadata is not None else item
        cached = self.cache.get(self.fhir_version, key)
        if cached is not None:
            return StructureDefinition.from_json(cached)
        if self.fish_for_fhir(item, *STRUCTURE_TYPES) is None:
            return None
        sd = StructureDefinition.from_base(item, self)
        self.cache.put(self.fhir_version, key, sd.to_json())
        return StructureDefinition.from_json(sd.to_json())
