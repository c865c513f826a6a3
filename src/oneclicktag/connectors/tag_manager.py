"""Google Tag Manager API v2 client."""

from typing import Any, Dict, List, Optional

from .pagination import collect_pages
from .transport import GoogleApiSession

BASE_URL = "https://tagmanager.googleapis.com/tagmanager/v2"

# Workspace collections: (URL segment, list response key, id field)
ENTITY_KINDS = {
    "variables": ("variable", "variableId"),
    "triggers": ("trigger", "triggerId"),
    "tags": ("tag", "tagId"),
    "clients": ("client", "clientId"),
}


def container_path(account_id: str, container_id: str) -> str:
    return f"accounts/{account_id}/containers/{container_id}"


def workspace_path(account_id: str, container_id: str, workspace_id: str) -> str:
    return f"{container_path(account_id, container_id)}/workspaces/{workspace_id}"


def entity_id(kind: str, entity: Dict[str, Any]) -> str:
    return str(entity[ENTITY_KINDS[kind][1]])


class TagManagerClient:
    """Calls against ``tagmanager.googleapis.com`` using one session."""

    def __init__(self, session: GoogleApiSession):
        self.session = session

    async def _list(self, path: str, results_key: str) -> List[Dict[str, Any]]:
        async def fetch(page_token):
            params = {"pageToken": page_token} if page_token else None
            return await self.session.request("GET", f"{BASE_URL}/{path}", params=params)

        return await collect_pages(fetch, results_key=results_key)

    async def list_accounts(self) -> List[Dict[str, Any]]:
        return await self._list("accounts", "account")

    async def list_containers(self, account_id: str) -> List[Dict[str, Any]]:
        return await self._list(f"accounts/{account_id}/containers", "container")

    async def list_workspaces(self, container: str) -> List[Dict[str, Any]]:
        return await self._list(f"{container}/workspaces", "workspace")

    async def create_workspace(self, container: str, name: str, description: str) -> Dict[str, Any]:
        return await self.session.request(
            "POST",
            f"{BASE_URL}/{container}/workspaces",
            json={"name": name, "description": description},
        )

    async def list_entities(self, workspace: str, kind: str) -> List[Dict[str, Any]]:
        return await self._list(f"{workspace}/{kind}", ENTITY_KINDS[kind][0])

    async def create_entity(self, workspace: str, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.session.request("POST", f"{BASE_URL}/{workspace}/{kind}", json=body)

    async def delete_entity(self, workspace: str, kind: str, entity_id: str):
        await self.session.request("DELETE", f"{BASE_URL}/{workspace}/{kind}/{entity_id}")

    async def enable_built_in_variables(self, workspace: str, types: List[str]):
        if types:
            await self.session.request(
                "POST", f"{BASE_URL}/{workspace}/built_in_variables", params={"type": types}
            )

    async def create_version(
        self, workspace: str, name: str, notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a container version from the workspace.

        The response holds ``containerVersion`` and ``compilerError``.
        """
        body = {"name": name}
        if notes:
            body["notes"] = notes
        return await self.session.request("POST", f"{BASE_URL}/{workspace}:create_version", json=body)

    async def publish_version(self, version_path: str) -> Dict[str, Any]:
        return await self.session.request("POST", f"{BASE_URL}/{version_path}:publish")
