"""TagGraphBuilder: realizes one tracking definition as GTM entities.

State per tracking::

    pending -> workspace_ready -> triggers_created -> tags_created -> published -> active
    (any step) -> failed

Each step persists the ids it produced through a checkpoint callback, so a
retried build adopts what already exists instead of recreating it.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..connectors.exceptions import (
    InvalidRequestError,
    ProvisioningError,
    RemoteNotFoundError,
    RemoteRejectedError,
)
from ..connectors.tag_manager import container_path, entity_id, workspace_path
from ..models.tracking import Tracking, TrackingStatus, TrackingType
from .locator import ResourceLocator, ResourceSpec
from .tenant_resources import ContainerRef

logger = logging.getLogger(__name__)

S = TrackingStatus

FORWARD = {
    S.PENDING: S.WORKSPACE_READY,
    S.WORKSPACE_READY: S.TRIGGERS_CREATED,
    S.TRIGGERS_CREATED: S.TAGS_CREATED,
    S.TAGS_CREATED: S.PUBLISHED,
    S.PUBLISHED: S.ACTIVE,
}

# Restart, failure, deferral and teardown may happen from any state
ALWAYS_REACHABLE = {S.PENDING, S.FAILED, S.LABEL_PENDING, S.DISABLED}

CONDITION_OPERATORS = {"equals", "contains", "startsWith", "endsWith", "matchRegex", "greater", "less"}


class InvalidTransitionError(ValueError):
    pass


def advance(current: TrackingStatus, target: TrackingStatus) -> TrackingStatus:
    """Validate a state change along the forward path."""
    if target in ALWAYS_REACHABLE or FORWARD.get(current) == target:
        return target
    raise InvalidTransitionError(f"Cannot move tracking from {current.value} to {target.value}")


@dataclass
class TagGraphArtifacts:
    """Remote GTM ids produced for one tracking definition."""

    workspace_id: Optional[str] = None
    variable_ids: Dict[str, str] = field(default_factory=dict)
    trigger_id: Optional[str] = None
    ga4_tag_id: Optional[str] = None
    ads_tag_id: Optional[str] = None
    client_id: Optional[str] = None
    container_version_id: Optional[str] = None
    created_count: int = 0

    @classmethod
    def from_tracking(cls, tracking: Tracking) -> "TagGraphArtifacts":
        return cls(
            workspace_id=tracking.gtm_workspace_id,
            variable_ids=dict(tracking.gtm_variable_ids or {}),
            trigger_id=tracking.gtm_trigger_id,
            ga4_tag_id=tracking.gtm_tag_id_ga4,
            ads_tag_id=tracking.gtm_tag_id_ads,
            client_id=tracking.gtm_client_id,
            container_version_id=tracking.gtm_container_version_id,
            created_count=tracking.created_entity_count or 0,
        )

    def tag_ids(self) -> Dict[str, Optional[str]]:
        return {"ga4": self.ga4_tag_id, "ads": self.ads_tag_id}


@dataclass
class EntitySpec:
    kind: str
    name: str
    body: Dict[str, Any]


@dataclass
class TagGraphTarget:
    """Everything outside the tracking row that the graph depends on."""

    container: ContainerRef
    workspace_reference: Optional[str] = None
    measurement_id: Optional[str] = None
    conversion_id: Optional[str] = None
    conversion_label: Optional[str] = None


@dataclass
class TagGraphPlan:
    variables: List[EntitySpec]
    built_in_variables: List[str]
    trigger: EntitySpec
    tags: Dict[str, EntitySpec]
    client: Optional[EntitySpec] = None


Checkpoint = Callable[[TrackingStatus, TagGraphArtifacts, Optional[str]], Awaitable[None]]


def _template(key: str, value: str) -> Dict[str, str]:
    return {"type": "template", "key": key, "value": value}


def _boolean(key: str, value: bool) -> Dict[str, str]:
    return {"type": "boolean", "key": key, "value": "true" if value else "false"}


def _condition(operator: str, variable: str, value: str) -> Dict[str, Any]:
    return {"type": operator, "parameter": [_template("arg0", variable), _template("arg1", value)]}


def default_event_name(tracking: Tracking) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", tracking.name.lower()).strip("_")
    return (tracking.event_name or slug or "conversion")[:40]


def _require(value: Optional[str], what: str) -> str:
    if not value:
        raise InvalidRequestError(f"{what} is required for this tracking")
    return value


def _web_trigger(tracking: Tracking, filters: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
    kind = tracking.tracking_type
    if kind in (TrackingType.BUTTON_CLICK, TrackingType.LINK_CLICK):
        selector = _require(tracking.css_selector, "A CSS selector")
        filters.append(_condition("cssSelector", "{{Click Element}}", selector))
        trigger_type = "click" if kind == TrackingType.BUTTON_CLICK else "linkClick"
        return {"type": trigger_type, "filter": filters}, ["clickElement"]
    if kind == TrackingType.FORM_SUBMIT:
        if tracking.css_selector:
            filters.append(_condition("cssSelector", "{{Form Element}}", tracking.css_selector))
        return {"type": "formSubmission", "filter": filters}, ["formElement"]
    if kind == TrackingType.PAGE_VIEW:
        if tracking.url_pattern:
            filters.append(_condition("contains", "{{Page URL}}", tracking.url_pattern))
        return {"type": "pageview", "filter": filters}, ["pageUrl"]
    if kind == TrackingType.ELEMENT_VISIBILITY:
        selector = _require(tracking.css_selector, "A CSS selector")
        return {
            "type": "elementVisibility",
            "filter": filters,
            "parameter": [
                _template("selectorType", "CSS"),
                _template("elementSelector", selector),
                _template("firingFrequency", "ONCE_PER_PAGE"),
            ],
        }, []
    event_name = _require(tracking.event_name, "An event name")
    return {
        "type": "customEvent",
        "filter": filters,
        "customEventFilter": [_condition("equals", "{{_event}}", event_name)],
    }, ["event"]


def plan_tag_graph(tracking: Tracking, target: TagGraphTarget, prefix: str) -> TagGraphPlan:
    """Describe the GTM entities for a tracking, in creation order."""
    base = f"{prefix} - {tracking.name}"
    variables: List[EntitySpec] = []
    filters: List[Dict[str, Any]] = []

    def data_layer_variable(key: str) -> str:
        name = f"{base} - {key}"
        variables.append(
            EntitySpec(
                "variables",
                name,
                {
                    "type": "v",
                    "parameter": [
                        _template("name", key),
                        {"type": "integer", "key": "dataLayerVersion", "value": "2"},
                    ],
                },
            )
        )
        return "{{" + name + "}}"

    for condition in tracking.conditions or []:
        operator = condition.get("operator", "equals")
        if operator not in CONDITION_OPERATORS:
            raise InvalidRequestError(f"Unsupported condition operator '{operator}'")
        reference = data_layer_variable(condition["data_layer_key"])
        filters.append(_condition(operator, reference, str(condition.get("value", ""))))

    value_reference = None
    if tracking.value_data_layer_key:
        value_reference = data_layer_variable(tracking.value_data_layer_key)

    server = target.container.is_server
    event_name = default_event_name(tracking)
    if server:
        filters.append(_condition("equals", "{{Event Name}}", event_name))
        trigger_body, built_ins = {"type": "always", "filter": filters}, ["eventName"]
    else:
        trigger_body, built_ins = _web_trigger(tracking, filters)
    trigger = EntitySpec("triggers", f"{base} - Trigger", trigger_body)

    tags: Dict[str, EntitySpec] = {}
    if tracking.destination.includes_ga4:
        measurement_id = _require(target.measurement_id, "A GA4 measurement id")
        parameters = [_template("eventName", event_name)]
        if server:
            parameters.append(_template("measurementId", measurement_id))
        else:
            parameters.append(_template("measurementIdOverride", measurement_id))
        if value_reference:
            parameters.append({
                "type": "list",
                "key": "eventSettingsTable",
                "list": [{
                    "type": "map",
                    "map": [_template("parameter", "value"), _template("parameterValue", value_reference)],
                }],
            })
        tags["ga4"] = EntitySpec(
            "tags", f"{base} - GA4 Event", {"type": "sgtmgaaw" if server else "gaawe", "parameter": parameters}
        )

    if tracking.destination.includes_ads:
        parameters = [
            _template("conversionId", _require(target.conversion_id, "An Ads conversion id")),
            _template("conversionLabel", _require(target.conversion_label, "An Ads conversion label")),
        ]
        if value_reference:
            parameters.append(_template("conversionValue", value_reference))
        if not server:
            parameters.extend([
                _boolean("enableNewCustomerReporting", False),
                _boolean("enableEnhancedConversion", False),
            ])
        tags["ads"] = EntitySpec(
            "tags", f"{base} - Conversion Tag", {"type": "sgtmadsct" if server else "awct", "parameter": parameters}
        )

    client = None
    if server:
        client = EntitySpec("clients", f"{prefix} - GA4 Client", {"type": "gaaw_client", "parameter": []})

    return TagGraphPlan(
        variables=variables, built_in_variables=built_ins, trigger=trigger, tags=tags, client=client
    )


class TagGraphBuilder:
    """Creates, publishes and tears down the GTM entities of trackings."""

    def __init__(
        self,
        gtm,
        locator: Optional[ResourceLocator] = None,
        *,
        prefix: str,
        workspace_name: str,
    ):
        self.gtm = gtm
        self.locator = locator or ResourceLocator()
        self.prefix = prefix
        self.workspace_name = workspace_name

    async def ensure_workspace(
        self,
        container: ContainerRef,
        reference: Optional[str] = None,
        store_reference: Optional[Callable[[str], Awaitable[str]]] = None,
        forget_reference: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> str:
        """Find or create the application's workspace in a container.

        A stored workspace id is checked against the container first: GTM
        deletes a workspace once a version is created from it, so the stored
        id can outlive the workspace. A dead id is forgotten through
        ``forget_reference`` before the workspace is resolved again.
        """
        path = container_path(container.account_id, container.container_id)

        async def load_reference():
            if reference is None:
                return None
            live = {str(w["workspaceId"]) for w in await self.gtm.list_workspaces(path)}
            if reference in live:
                return reference
            logger.warning("Workspace %s no longer exists in %s", reference, path)
            if forget_reference is not None:
                await forget_reference()
            return None

        async def search(name):
            for workspace in await self.gtm.list_workspaces(path):
                if workspace.get("name") == name:
                    return str(workspace["workspaceId"])
            return None

        async def create(name):
            workspace = await self.gtm.create_workspace(
                path, name, f"Tracking managed by {self.prefix}"
            )
            return str(workspace["workspaceId"])

        spec = ResourceSpec(
            kind="gtm_workspace",
            name=self.workspace_name,
            search=search,
            create=create,
            load_reference=load_reference,
        )
        if store_reference is not None:
            spec.store_reference = store_reference
        return (await self.locator.find_or_create(spec)).value

    async def _ensure_entity(self, workspace: str, spec: EntitySpec, artifacts: TagGraphArtifacts) -> str:
        async def search(name):
            for entity in await self.gtm.list_entities(workspace, spec.kind):
                if entity.get("name") == name:
                    return entity_id(spec.kind, entity)
            return None

        async def create(name):
            entity = await self.gtm.create_entity(workspace, spec.kind, {"name": name, **spec.body})
            return entity_id(spec.kind, entity)

        resolved = await self.locator.find_or_create(
            ResourceSpec(kind=f"gtm_{spec.kind}", name=spec.name, search=search, create=create)
        )
        if resolved.created:
            artifacts.created_count += 1
        return resolved.value

    async def ensure_conversion_linker(self, workspace: str, artifacts: TagGraphArtifacts):
        """Shared All Pages trigger and Conversion Linker tag of a web container."""
        all_pages = await self._ensure_entity(
            workspace,
            EntitySpec("triggers", f"{self.prefix} - All Pages", {"type": "pageview"}),
            artifacts,
        )
        await self._ensure_entity(
            workspace,
            EntitySpec(
                "tags",
                f"{self.prefix} - Conversion Linker",
                {
                    "type": "gclidw",
                    "parameter": [
                        _boolean("enableCrossDomain", False),
                        _boolean("enableUrlPassthrough", False),
                        _boolean("enableCookieOverrides", False),
                    ],
                    "firingTriggerId": [all_pages],
                },
            ),
            artifacts,
        )

    async def build(
        self,
        tracking: Tracking,
        target: TagGraphTarget,
        artifacts: TagGraphArtifacts,
        checkpoint: Checkpoint,
        store_workspace: Optional[Callable[[str], Awaitable[str]]] = None,
        on_version_created: Optional[Callable[[], Awaitable[None]]] = None,
        forget_workspace: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> TagGraphArtifacts:
        """Run the state machine to ``active`` or ``failed``.

        Raises the classified ProvisioningError after recording ``failed``.
        """
        status = S.PENDING
        try:
            plan = plan_tag_graph(tracking, target, self.prefix)

            artifacts.workspace_id = await self.ensure_workspace(
                target.container, target.workspace_reference, store_workspace, forget_workspace
            )
            status = advance(status, S.WORKSPACE_READY)
            await checkpoint(status, artifacts, None)

            workspace = workspace_path(
                target.container.account_id, target.container.container_id, artifacts.workspace_id
            )
            if not artifacts.trigger_id:
                await self.gtm.enable_built_in_variables(workspace, plan.built_in_variables)

            for variable in plan.variables:
                if variable.name not in artifacts.variable_ids:
                    artifacts.variable_ids[variable.name] = await self._ensure_entity(
                        workspace, variable, artifacts
                    )
                    await checkpoint(status, artifacts, None)

            if not artifacts.trigger_id:
                artifacts.trigger_id = await self._ensure_entity(workspace, plan.trigger, artifacts)
            status = advance(status, S.TRIGGERS_CREATED)
            await checkpoint(status, artifacts, None)

            if plan.client is not None and not artifacts.client_id:
                artifacts.client_id = await self._ensure_entity(workspace, plan.client, artifacts)
                await checkpoint(status, artifacts, None)
            if "ads" in plan.tags and not target.container.is_server:
                await self.ensure_conversion_linker(workspace, artifacts)

            for key, tag in plan.tags.items():
                if artifacts.tag_ids()[key]:
                    continue
                tag.body["firingTriggerId"] = [artifacts.trigger_id]
                tag_id = await self._ensure_entity(workspace, tag, artifacts)
                if key == "ga4":
                    artifacts.ga4_tag_id = tag_id
                else:
                    artifacts.ads_tag_id = tag_id
                await checkpoint(status, artifacts, None)
            status = advance(status, S.TAGS_CREATED)
            await checkpoint(status, artifacts, None)

            artifacts.container_version_id = await self.publish(
                target.container, workspace, f"{self.prefix} - {tracking.name}", on_version_created
            )
            status = advance(status, S.PUBLISHED)
            await checkpoint(status, artifacts, None)

            status = advance(status, S.ACTIVE)
            await checkpoint(status, artifacts, None)
            logger.info(
                "Tracking '%s' is live in container version %s",
                tracking.name,
                artifacts.container_version_id,
            )
            return artifacts
        except ProvisioningError as exc:
            logger.warning(
                "Tag graph for '%s' failed after %s with %d entities created: %s",
                tracking.name,
                status.value,
                artifacts.created_count,
                exc,
            )
            await checkpoint(S.FAILED, artifacts, f"{exc.kind}: {exc}")
            raise

    async def publish(
        self,
        container: ContainerRef,
        workspace: str,
        version_name: str,
        on_version_created: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> str:
        """Create a container version from the workspace and publish it."""
        result = await self.gtm.create_version(
            workspace, version_name, notes=f"Published by {self.prefix}"
        )
        if result.get("compilerError") or "containerVersion" not in result:
            raise RemoteRejectedError(
                "Tag Manager could not compile the workspace", api="tagmanager", provider_error=result
            )
        # GTM deletes a non-default workspace once a version is cut from it
        if on_version_created is not None:
            await on_version_created()

        version = result["containerVersion"]
        version_id = str(version["containerVersionId"])
        path = version.get("path") or (
            f"{container_path(container.account_id, container.container_id)}/versions/{version_id}"
        )
        await self.gtm.publish_version(path)
        return version_id

    async def teardown(self, workspace: str, artifacts: TagGraphArtifacts) -> List[Tuple[str, str]]:
        """Delete tags, then the trigger, then variables.

        Entities already gone count as deleted. Any other failure stops the
        teardown so nothing is deleted while still referenced; the ids left
        in ``artifacts`` are the ones that remain.
        """
        deleted: List[Tuple[str, str]] = []

        async def remove(kind: str, remote_id: str) -> bool:
            try:
                await self.gtm.delete_entity(workspace, kind, remote_id)
            except RemoteNotFoundError:
                logger.info("GTM %s %s was already deleted", kind, remote_id)
            except ProvisioningError as exc:
                logger.warning("Failed to delete GTM %s %s: %s", kind, remote_id, exc)
                return False
            deleted.append((kind, remote_id))
            return True

        for key, tag_id in artifacts.tag_ids().items():
            if tag_id:
                if not await remove("tags", tag_id):
                    return deleted
                setattr(artifacts, f"{key}_tag_id", None)

        if artifacts.trigger_id:
            if not await remove("triggers", artifacts.trigger_id):
                return deleted
            artifacts.trigger_id = None

        for name, variable_id in reversed(list(artifacts.variable_ids.items())):
            if not await remove("variables", variable_id):
                return deleted
            del artifacts.variable_ids[name]

        return deleted
