# playbook_engine/playbooks/catalog.py
"""
Asset catalog: an arena of parsed scripts and playbooks.

Assets are addressed by (scope, kind, id, version); references between
them are never held as object pointers. Lookups from a tenant-scoped asset
search the tenant scope first and then the global library.

The resolver and validators work synchronously against the catalog. When
assets may be missing (search-time resolution in the API process),
``prefetch_playbook`` walks the reference tree and loads misses from the
Reference Store first.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from playbook_engine.core.errors import AssetNotFound
from playbook_engine.core.storage.reference_store import (
    GLOBAL_SCOPE,
    KIND_PLAYBOOK,
    KIND_SCRIPT,
    ReferenceStore,
)
from playbook_engine.playbooks.models import Playbook, Script

logger = logging.getLogger("playbook_engine.catalog")

CatalogKey = Tuple[str, str, str, str]


def lookup_scopes(scope: str) -> List[str]:
    """Scopes searched for references made by an asset in ``scope``."""
    if scope == GLOBAL_SCOPE:
        return [GLOBAL_SCOPE]
    return [scope, GLOBAL_SCOPE]


class AssetCatalog:
    def __init__(self):
        self._assets: Dict[CatalogKey, object] = {}

    def __len__(self) -> int:
        return len(self._assets)

    def copy(self) -> "AssetCatalog":
        """Shallow copy, used to stage unpublished drafts without touching the original."""
        clone = AssetCatalog()
        clone._assets = dict(self._assets)
        return clone

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def add_script(self, scope: str, script: Script) -> None:
        self._assets[(scope, KIND_SCRIPT, script.script_id, script.version)] = script

    def add_playbook(self, scope: str, playbook: Playbook) -> None:
        self._assets[(scope, KIND_PLAYBOOK, playbook.playbook_id, playbook.version)] = playbook

    def remove(self, scope: str, kind: str, asset_id: str, version: str) -> None:
        self._assets.pop((scope, kind, asset_id, version), None)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _find(self, scope: str, kind: str, asset_id: str, version: str) -> Optional[Tuple[str, object]]:
        for candidate in lookup_scopes(scope):
            asset = self._assets.get((candidate, kind, asset_id, version))
            if asset is not None:
                return candidate, asset
        return None

    def find_script(self, scope: str, script_id: str, version: str) -> Optional[Tuple[str, Script]]:
        return self._find(scope, KIND_SCRIPT, script_id, version)

    def find_playbook(self, scope: str, playbook_id: str, version: str) -> Optional[Tuple[str, Playbook]]:
        return self._find(scope, KIND_PLAYBOOK, playbook_id, version)

    def get_script(self, scope: str, script_id: str, version: str) -> Tuple[str, Script]:
        found = self.find_script(scope, script_id, version)
        if found is None:
            raise AssetNotFound(
                f"Script '{script_id}' version {version} not found",
                details={"kind": KIND_SCRIPT, "id": script_id, "version": version, "scope": scope},
            )
        return found

    def get_playbook(self, scope: str, playbook_id: str, version: str) -> Tuple[str, Playbook]:
        found = self.find_playbook(scope, playbook_id, version)
        if found is None:
            raise AssetNotFound(
                f"Playbook '{playbook_id}' version {version} not found",
                details={"kind": KIND_PLAYBOOK, "id": playbook_id, "version": version, "scope": scope},
            )
        return found

    def playbooks(self, scope: Optional[str] = None) -> Iterable[Tuple[str, Playbook]]:
        for (asset_scope, kind, _, _), asset in self._assets.items():
            if kind == KIND_PLAYBOOK and (scope is None or asset_scope == scope):
                yield asset_scope, asset

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def load_script(self, store: ReferenceStore, scope: str, script_id: str, version: str) -> Tuple[str, Script]:
        """Return the script from the catalog, loading it from the store on a miss."""
        found = self.find_script(scope, script_id, version)
        if found is not None:
            return found
        for candidate in lookup_scopes(scope):
            if await store.exists(candidate, KIND_SCRIPT, script_id, version):
                script = Script.from_dict(await store.get_script(candidate, script_id, version))
                self.add_script(candidate, script)
                return candidate, script
        return self.get_script(scope, script_id, version)

    async def load_playbook(
        self, store: ReferenceStore, scope: str, playbook_id: str, version: str
    ) -> Tuple[str, Playbook]:
        found = self.find_playbook(scope, playbook_id, version)
        if found is not None:
            return found
        for candidate in lookup_scopes(scope):
            if await store.exists(candidate, KIND_PLAYBOOK, playbook_id, version):
                playbook = Playbook.from_dict(await store.get_playbook(candidate, playbook_id, version))
                self.add_playbook(candidate, playbook)
                return candidate, playbook
        return self.get_playbook(scope, playbook_id, version)

    async def prefetch_playbook(
        self,
        store: ReferenceStore,
        scope: str,
        playbook_id: str,
        version: str,
        max_depth: int,
    ) -> None:
        """
        Load a playbook and everything it references into the catalog.

        Walks one level past ``max_depth`` so the resolver can report depth
        violations itself. Missing assets are left missing; the resolver
        raises AssetNotFound with the referring path.
        """
        seen: Set[Tuple[str, str, str]] = set()
        frontier = [(scope, playbook_id, version, 0)]
        while frontier:
            ref_scope, ref_id, ref_version, depth = frontier.pop()
            if (ref_scope, ref_id, ref_version) in seen or depth > max_depth + 1:
                continue
            seen.add((ref_scope, ref_id, ref_version))
            try:
                owner_scope, playbook = await self.load_playbook(store, ref_scope, ref_id, ref_version)
            except AssetNotFound:
                logger.debug(f"Prefetch miss: playbook {ref_id}@{ref_version} ({ref_scope})")
                continue
            for step in playbook.steps:
                if step.script_ref and step.embedded_script is None:
                    try:
                        await self.load_script(
                            store, owner_scope, step.script_ref.script_id, step.script_ref.version
                        )
                    except AssetNotFound:
                        logger.debug(f"Prefetch miss: script {step.script_ref.script_id}@{step.script_ref.version}")
                if step.playbook_ref:
                    frontier.append(
                        (owner_scope, step.playbook_ref.playbook_id, step.playbook_ref.version, depth + 1)
                    )
