from dataclasses import dataclass
from typing import Protocol, Tuple
from urllib.parse import urlencode

from placement import DesignSnapshot


@dataclass(frozen=True)
class CheckoutAttributes:
    scale: float
    colors: Tuple[str, ...]

    @property
    def color_count(self) -> int:
        return len(self.colors)

    @classmethod
    def from_snapshot(cls, snapshot: DesignSnapshot) -> "CheckoutAttributes":
        return cls(scale=snapshot.transform.scale, colors=snapshot.verdict.suggested_colors)


class CheckoutRedirect(Protocol):
    """Hands a saved design over to an external checkout; returns where to send the customer."""

    def redirect_url(self, design_id: str, attributes: CheckoutAttributes) -> str:
        ...


class ShopifyCheckout:
    """Builds a Shopify cart permalink carrying the design as line item attributes."""

    def __init__(self, domain: str, variant_id: str, quantity: int = 1):
        self.domain = domain
        self.variant_id = variant_id
        self.quantity = quantity

    def redirect_url(self, design_id: str, attributes: CheckoutAttributes) -> str:
        base_url = f"https://{self.domain}/cart/{self.variant_id}:{self.quantity}"
        params = urlencode([
            ("attributes[Design ID]", design_id),
            ("attributes[Colors]", ", ".join(attributes.colors)),
            ("attributes[Color Count]", str(attributes.color_count)),
            ("attributes[Scale]", f"{attributes.scale:g}mm"),
        ])
        return f"{base_url}?{params}"
