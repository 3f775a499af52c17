"""Channel strategies: how a variant is identified in each external surface.

The engine core (assignment, ingestion, statistics) is shared by every test
type; only the mapping between a variant and its external identifier differs.
"""

from typing import Any, Protocol

from .errors import ConfigError
from .models import ABTestType, VariantDefinition

SHIPPING_CART_ATTRIBUTE = "_ab_shipping_suffix"
LANDING_PAGE_QUERY_PARAM = "ab_variant"


class VariantChannel(Protocol):
    def variant_ref(self, test_id: str, variant: VariantDefinition) -> dict[str, str]:
        """Identifier handed to the rendering surface for this variant."""
        ...

    def observed_ref(self, payload: dict[str, Any]) -> str | None:
        """Identifier actually seen on an inbound payload, if any."""
        ...


class LandingPageChannel:
    def variant_ref(self, test_id: str, variant: VariantDefinition) -> dict[str, str]:
        return {"query_param": LANDING_PAGE_QUERY_PARAM, "value": variant.id}

    def observed_ref(self, payload: dict[str, Any]) -> str | None:
        params = payload.get("query_params") or {}
        return params.get(LANDING_PAGE_QUERY_PARAM)


class ShippingChannel:
    """Variant suffix travels as a cart attribute and comes back on the order's shipping line."""

    def variant_ref(self, test_id: str, variant: VariantDefinition) -> dict[str, str]:
        if not variant.shipping_suffix:
            return {}
        return {"cart_attribute": SHIPPING_CART_ATTRIBUTE, "value": variant.shipping_suffix}

    def observed_ref(self, payload: dict[str, Any]) -> str | None:
        for line in payload.get("shipping_lines") or []:
            title = str(line.get("title") or line.get("code") or "")
            # Shipping line titles carry the suffix after the last separator,
            # e.g. "Standard Shipping - B"
            if " - " in title:
                return title.rsplit(" - ", 1)[1].strip() or None
        return None


class EmailChannel:
    def variant_ref(self, test_id: str, variant: VariantDefinition) -> dict[str, str]:
        return {"template_id": f"{test_id}:{variant.id}"}

    def observed_ref(self, payload: dict[str, Any]) -> str | None:
        template_id = payload.get("template_id")
        if not template_id or ":" not in template_id:
            return None
        return template_id.split(":", 1)[1]


_CHANNELS: dict[str, VariantChannel] = {
    ABTestType.LANDING_PAGE: LandingPageChannel(),
    ABTestType.SHIPPING: ShippingChannel(),
    ABTestType.EMAIL: EmailChannel(),
}


def channel_for(test_type: str) -> VariantChannel:
    try:
        return _CHANNELS[test_type]
    except KeyError:
        raise ConfigError(f"unknown test type: {test_type}") from None


def suffixes_match(expected: str | None, observed: str | None) -> bool:
    """Case-insensitive suffix comparison; a missing observed suffix is a mismatch."""
    if expected is None:
        return True
    if observed is None:
        return False
    return expected.strip().lower() == observed.strip().lower()
