"""ConversionRegistrar: Ads conversion actions and their conversion labels."""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..connectors.exceptions import RemoteConflictError, RemoteNotFoundError, RemoteTransientError
from ..connectors.retry import poll_with_fixed_delay
from ..models.conversion_action import ConversionStatus
from ..models.tracking import TrackingType

logger = logging.getLogger(__name__)

_CONVERSION_ID = re.compile(r"AW-(\d+)")
_SEND_TO_LABEL = re.compile(r"""['"]send_to['"]\s*:\s*['"]AW-\d+/([^'"]+)['"]""")

CATEGORY_BY_TRACKING_TYPE = {
    TrackingType.FORM_SUBMIT: "SUBMIT_LEAD_FORM",
    TrackingType.PAGE_VIEW: "PAGE_VIEW",
    TrackingType.LINK_CLICK: "OUTBOUND_CLICK",
}


def category_for(tracking_type: TrackingType) -> str:
    return CATEGORY_BY_TRACKING_TYPE.get(tracking_type, "DEFAULT")


@dataclass
class ConversionActionDefinition:
    name: str
    category: str = "DEFAULT"
    counting_type: str = "ONE_PER_CLICK"
    click_through_lookback_window_days: int = 30
    view_through_lookback_window_days: int = 1
    include_in_conversions_metric: bool = True
    default_value: Optional[float] = None
    currency_code: Optional[str] = None

    def to_resource(self) -> Dict[str, Any]:
        resource = {
            "name": self.name,
            "category": self.category,
            "type": "WEBPAGE",
            "status": "ENABLED",
            "countingType": self.counting_type,
            "clickThroughLookbackWindowDays": self.click_through_lookback_window_days,
            "viewThroughLookbackWindowDays": self.view_through_lookback_window_days,
            "includeInConversionsMetric": self.include_in_conversions_metric,
            "attributionModelSettings": {"attributionModel": "GOOGLE_ADS_LAST_CLICK"},
        }
        if self.default_value is not None:
            resource["valueSettings"] = {
                "defaultValue": self.default_value,
                "defaultCurrencyCode": self.currency_code or "USD",
                "alwaysUseDefaultValue": False,
            }
        return resource


@dataclass(frozen=True)
class ConversionActionResult:
    conversion_action_id: str
    resource_name: str
    conversion_id: Optional[str]
    conversion_label: Optional[str]
    status: ConversionStatus
    adopted: bool = False

    @property
    def label_pending(self) -> bool:
        return self.status == ConversionStatus.LABEL_PENDING


def parse_tag_snippets(action: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Extract (conversion id, conversion label) from ``tagSnippets``."""
    conversion_id = label = None
    for snippet in action.get("tagSnippets") or []:
        for text in (snippet.get("globalSiteTag"), snippet.get("eventSnippet")):
            if not text:
                continue
            id_match = _CONVERSION_ID.search(text)
            label_match = _SEND_TO_LABEL.search(text)
            if conversion_id is None and id_match:
                conversion_id = id_match.group(1)
            if label is None and label_match:
                label = label_match.group(1)
    return conversion_id, label


class ConversionRegistrar:
    def __init__(self, ads, *, label_attempts: int = 3, label_delay_seconds: float = 2.0):
        self.ads = ads
        self.label_attempts = label_attempts
        self.label_delay_seconds = label_delay_seconds

    async def ensure_conversion_action(
        self, customer_id: str, definition: ConversionActionDefinition
    ) -> ConversionActionResult:
        """Create the conversion action, or adopt the one already using its name.

        A label that is still not visible after the bounded retries yields a
        ``LABEL_PENDING`` result instead of an error.
        """
        try:
            resource_name = await self.ads.create_conversion_action(
                customer_id, definition.to_resource()
            )
            logger.info("Created conversion action '%s' (%s)", definition.name, resource_name)
            adopted = False
        except RemoteConflictError:
            existing = await self.ads.find_conversion_action(customer_id, definition.name)
            if existing is None:
                raise
            logger.info("Conversion action '%s' already exists, adopting it", definition.name)
            resource_name = existing["resourceName"]
            adopted = True
            conversion_id, label = parse_tag_snippets(existing)
            if conversion_id and label:
                return self._result(resource_name, conversion_id, label, adopted)

        return await self.resolve_label(customer_id, resource_name, adopted=adopted)

    async def resolve_label(
        self, customer_id: str, resource_name: str, adopted: bool = False
    ) -> ConversionActionResult:
        """Poll the tag snippets until the conversion label is available."""
        action_id = resource_name.split("/")[-1]

        async def fetch():
            action = await self.ads.get_conversion_action(customer_id, action_id)
            if action is None:
                return None
            conversion_id, label = parse_tag_snippets(action)
            return (conversion_id, label) if conversion_id and label else None

        found = await poll_with_fixed_delay(
            fetch,
            attempts=self.label_attempts,
            delay=self.label_delay_seconds,
            retry_on=(RemoteTransientError, RemoteNotFoundError),
        )
        if found is None:
            logger.warning(
                "Conversion label for %s not available after %d attempts",
                resource_name,
                self.label_attempts,
            )
            return ConversionActionResult(
                conversion_action_id=action_id,
                resource_name=resource_name,
                conversion_id=None,
                conversion_label=None,
                status=ConversionStatus.LABEL_PENDING,
                adopted=adopted,
            )
        return self._result(resource_name, found[0], found[1], adopted)

    async def remove_conversion_action(self, customer_id: str, resource_name: str):
        await self.ads.remove_conversion_action(customer_id, resource_name)
        logger.info("Removed conversion action %s", resource_name)

    @staticmethod
    def _result(resource_name, conversion_id, label, adopted) -> ConversionActionResult:
        return ConversionActionResult(
            conversion_action_id=resource_name.split("/")[-1],
            resource_name=resource_name,
            conversion_id=conversion_id,
            conversion_label=label,
            status=ConversionStatus.READY,
            adopted=adopted,
        )
