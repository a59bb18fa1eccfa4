"""
Organizational Hierarchy
========================

Read-only access to the workspace tree and its members.

The engine never owns hierarchy data. It asks two questions:
- who may approve in a workspace (by role, or at a hierarchy level or above)
- which workspace sits above a given one

Adapters:
- HttpHierarchyResolver: the hierarchy service over HTTP (httpx)
- InMemoryHierarchyResolver: a static directory, optionally seeded from YAML
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

import httpx
import yaml

from approvalflow.config import HierarchyLevel
from approvalflow.core import ConfigurationException, HierarchyResolutionFailed
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

# Upper bound on tree depth when walking to the root.
MAX_HIERARCHY_DEPTH = 32


class HierarchyResolver(ABC):
    """Port onto the organizational hierarchy."""

    @abstractmethod
    async def resolve_approvers(
        self,
        workspace_id: str,
        role: Optional[str] = None,
        hierarchy_level: Optional[int] = None,
    ) -> FrozenSet[str]:
        """
        Users of a workspace holding ``role``, or sitting at
        ``hierarchy_level`` or above (numerically less or equal).

        Raises:
            HierarchyResolutionFailed: lookup could not be answered
        """

    @abstractmethod
    async def get_parent_workspace(self, workspace_id: str) -> Optional[str]:
        """Parent workspace id, or None for a root workspace."""

    async def get_root_workspace(self, workspace_id: str) -> Optional[str]:
        """Topmost ancestor of a workspace, or None when it has no parent."""
        current = workspace_id
        root = None
        for _ in range(MAX_HIERARCHY_DEPTH):
            parent = await self.get_parent_workspace(current)
            if parent is None:
                return root
            root = current = parent
        raise HierarchyResolutionFailed(
            f"Workspace {workspace_id} is deeper than {MAX_HIERARCHY_DEPTH} levels or cyclic",
            {"workspace_id": workspace_id}
        )


# ========== In-memory directory ==========

@dataclass(frozen=True)
class Member:
    user_id: str
    role: Optional[str] = None
    hierarchy_level: Optional[int] = None


@dataclass
class Workspace:
    id: str
    parent_id: Optional[str] = None
    members: List[Member] = field(default_factory=list)


class InMemoryHierarchyResolver(HierarchyResolver):
    """
    Static hierarchy directory.

    Unknown workspaces raise HierarchyResolutionFailed, matching what the
    hierarchy service answers for an id it does not know.
    """

    def __init__(self, workspaces: Optional[List[Workspace]] = None):
        self._workspaces: Dict[str, Workspace] = {}
        for workspace in workspaces or []:
            self.add_workspace(workspace)

    def add_workspace(self, workspace: Workspace) -> None:
        self._workspaces[workspace.id] = workspace

    def add_member(
        self,
        workspace_id: str,
        user_id: str,
        role: Optional[str] = None,
        hierarchy_level: Optional[int] = None,
    ) -> None:
        workspace = self._workspaces.setdefault(workspace_id, Workspace(id=workspace_id))
        workspace.members.append(Member(user_id, role, hierarchy_level))

    def _get(self, workspace_id: str) -> Workspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise HierarchyResolutionFailed(
                f"Unknown workspace {workspace_id}",
                {"workspace_id": workspace_id}
            )
        return workspace

    async def resolve_approvers(
        self,
        workspace_id: str,
        role: Optional[str] = None,
        hierarchy_level: Optional[int] = None,
    ) -> FrozenSet[str]:
        workspace = self._get(workspace_id)
        approvers = set()
        for member in workspace.members:
            if role is not None and member.role == role:
                approvers.add(member.user_id)
            elif (
                hierarchy_level is not None
                and member.hierarchy_level is not None
                and member.hierarchy_level <= int(hierarchy_level)
            ):
                approvers.add(member.user_id)
        return frozenset(approvers)

    async def get_parent_workspace(self, workspace_id: str) -> Optional[str]:
        return self._get(workspace_id).parent_id

    @classmethod
    def from_yaml(cls, path: Path) -> "InMemoryHierarchyResolver":
        """
        Load a directory file.

        Format:
            workspaces:
              - id: org
                members:
                  - {user_id: alice, role: FINANCE_LEAD, hierarchy_level: OWNER}
              - id: events
                parent_id: org
        """
        if not path.exists():
            raise ConfigurationException(f"Hierarchy seed file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        workspaces = []
        for raw in data.get("workspaces", []):
            members = [
                Member(
                    user_id=m["user_id"],
                    role=m.get("role"),
                    hierarchy_level=_parse_level(m.get("hierarchy_level")),
                )
                for m in raw.get("members", [])
            ]
            workspaces.append(Workspace(id=raw["id"], parent_id=raw.get("parent_id"), members=members))

        logger.info("Loaded hierarchy seed", extra={"path": str(path), "workspaces": len(workspaces)})
        return cls(workspaces)


def _parse_level(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str) and not value.isdigit():
        return int(HierarchyLevel[value.upper()])
    return int(value)


# ========== HTTP adapter ==========

class HttpHierarchyResolver(HierarchyResolver):
    """
    Client for the hierarchy service.

    Endpoints:
        GET {base}/workspaces/{id}/approvers?role=..&hierarchy_level=..
            -> {"user_ids": [...]}
        GET {base}/workspaces/{id}/parent
            -> {"parent_workspace_id": "..." | null}
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._http_client

    async def _get_json(self, path: str, params: Optional[dict] = None) -> dict:
        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise HierarchyResolutionFailed(
                f"GET {path} returned {e.response.status_code}",
                {"path": path, "status_code": e.response.status_code}
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise HierarchyResolutionFailed(f"GET {path} failed: {e}", {"path": path}) from e

    async def resolve_approvers(
        self,
        workspace_id: str,
        role: Optional[str] = None,
        hierarchy_level: Optional[int] = None,
    ) -> FrozenSet[str]:
        params = {}
        if role is not None:
            params["role"] = role
        if hierarchy_level is not None:
            params["hierarchy_level"] = int(hierarchy_level)
        data = await self._get_json(f"/workspaces/{workspace_id}/approvers", params)
        return frozenset(data.get("user_ids", []))

    async def get_parent_workspace(self, workspace_id: str) -> Optional[str]:
        data = await self._get_json(f"/workspaces/{workspace_id}/parent")
        return data.get("parent_workspace_id")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
