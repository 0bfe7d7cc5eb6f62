import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

from errors import InvalidPlacementValue, InvalidTransition, NotReady
from models import CanonicalImage, ManufacturabilityVerdict

logger = logging.getLogger(__name__)

TAU = 2.0 * math.pi


@dataclass(frozen=True)
class PrintBounds:
    """Printable envelope of the keychain blank, in millimetres."""
    min_scale: float = 5.0
    max_scale: float = 39.0
    max_offset: float = 15.0
    # Used when the gate does not recommend a scale.
    default_scale: float = 36.0

    @property
    def envelope_half(self) -> float:
        """Half-width of the square the placed image must stay inside."""
        return self.max_offset + self.max_scale / 2.0

    @property
    def blank_size(self) -> float:
        return 2.0 * self.envelope_half


PRINT_BOUNDS = PrintBounds()


@dataclass(frozen=True)
class PlacementTransform:
    """Placement of the canonical image on the blank: offsets and scale in mm, rotation in radians."""
    offset_x: float = 0.0
    offset_y: float = 0.0
    scale: float = PRINT_BOUNDS.default_scale
    rotation: float = 0.0

    def half_extent(self) -> float:
        """Half-width of the axis-aligned box around the rotated, scaled image."""
        return self.scale / 2.0 * (abs(math.cos(self.rotation)) + abs(math.sin(self.rotation)))


def _finite(name: str, value: float) -> float:
    value = float(value)
    if math.isnan(value):
        raise InvalidPlacementValue(f"{name} must be a number, got {value!r}")
    return value


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def wrap_rotation(rotation: float) -> float:
    """Maps any finite angle into [0, 2*pi)."""
    rotation = _finite("rotation", rotation)
    if math.isinf(rotation):
        raise InvalidPlacementValue("rotation must be finite")
    wrapped = rotation % TAU
    # Tiny negatives round up to exactly TAU.
    if wrapped >= TAU:
        wrapped = 0.0
    return wrapped


def max_offset_for(scale: float, rotation: float, bounds: PrintBounds = PRINT_BOUNDS) -> float:
    """Largest |offset| that keeps the rotated image inside the blank envelope."""
    half = PlacementTransform(scale=scale, rotation=rotation).half_extent()
    allowed = min(bounds.max_offset, bounds.envelope_half - half)
    return max(0.0, round(allowed, 9))


def clamp_transform(transform: PlacementTransform, bounds: PrintBounds = PRINT_BOUNDS) -> PlacementTransform:
    """Brings every field of a transform inside the printable bounds."""
    scale = _clamp(_finite("scale", transform.scale), bounds.min_scale, bounds.max_scale)
    rotation = wrap_rotation(transform.rotation)
    limit = max_offset_for(scale, rotation, bounds)
    return PlacementTransform(
        offset_x=_clamp(_finite("offset_x", transform.offset_x), -limit, limit),
        offset_y=_clamp(_finite("offset_y", transform.offset_y), -limit, limit),
        scale=scale,
        rotation=rotation,
    )


class PlacementState(Enum):
    UNINITIALIZED = "uninitialized"
    DEFAULT_PLACED = "default_placed"
    USER_EDITED = "user_edited"
    FINALIZED = "finalized"


EDITABLE_STATES = (PlacementState.DEFAULT_PLACED, PlacementState.USER_EDITED)


@dataclass(frozen=True)
class PlacementView:
    """Read-only projection handed to observers and the renderer."""
    state: PlacementState
    transform: PlacementTransform
    suggested_colors: Tuple[str, ...]
    canonical: Optional[CanonicalImage]


@dataclass(frozen=True)
class DesignSnapshot:
    """Finalized design handed to persistence and checkout."""
    canonical: Optional[CanonicalImage]
    transform: PlacementTransform
    verdict: ManufacturabilityVerdict


Observer = Callable[[PlacementView], None]


class PlacementEngine:
    """
    Authoritative placement state for one design.

    Uninitialized -> DefaultPlaced -> UserEdited -> Finalized, with reset()
    returning to Uninitialized from anywhere. Every edit is clamped into the
    print bounds, never rejected; only calls made in the wrong state fail.
    The engine does not render, it notifies subscribers after each change.
    """

    def __init__(self, bounds: PrintBounds = PRINT_BOUNDS):
        self.bounds = bounds
        self._observers: List[Observer] = []
        self._state = PlacementState.UNINITIALIZED
        self._transform = self._default_transform()
        self._canonical: Optional[CanonicalImage] = None
        self._verdict: Optional[ManufacturabilityVerdict] = None

    def _default_transform(self, scale: Optional[float] = None) -> PlacementTransform:
        if scale is None or not math.isfinite(scale):
            scale = self.bounds.default_scale
        return clamp_transform(PlacementTransform(scale=scale), self.bounds)

    @property
    def state(self) -> PlacementState:
        return self._state

    @property
    def transform(self) -> PlacementTransform:
        return self._transform

    @property
    def canonical(self) -> Optional[CanonicalImage]:
        return self._canonical

    @property
    def verdict(self) -> Optional[ManufacturabilityVerdict]:
        return self._verdict

    @property
    def suggested_colors(self) -> Tuple[str, ...]:
        return self._verdict.suggested_colors if self._verdict else ()

    def view(self) -> PlacementView:
        return PlacementView(self._state, self._transform, self.suggested_colors, self._canonical)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Registers a change callback; returns a function that removes it."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)
        return unsubscribe

    def _notify(self):
        view = self.view()
        for observer in list(self._observers):
            observer(view)

    def load_canonical(self, canonical: CanonicalImage):
        """Attaches a new canonical image; any earlier verdict is dropped."""
        if self._state is not PlacementState.UNINITIALIZED:
            raise InvalidTransition(f"Cannot load a new image while {self._state.value}; reset first.")
        self._canonical = canonical
        self._verdict = None
        self._transform = self._default_transform()
        self._notify()

    def apply_verdict(
        self,
        verdict: ManufacturabilityVerdict,
        canonical: Optional[CanonicalImage] = None,
    ) -> PlacementState:
        """
        Applies the gate's judgment to the current image.

        A printable verdict places the image at the recommended scale (clamped
        like any user value). A non-printable one keeps the engine
        uninitialized; the reasoning is on the verdict for the caller to show.
        """
        if self._state is not PlacementState.UNINITIALIZED:
            raise InvalidTransition(f"A verdict was already applied ({self._state.value}).")
        if canonical is not None:
            self._canonical = canonical
        elif self._verdict is not None:
            raise InvalidTransition("This image was already judged; upload a new image.")

        self._verdict = verdict
        if not verdict.is_printable:
            logger.info("Design not printable: %s", verdict.reasoning)
            self._notify()
            return self._state

        self._transform = self._default_transform(verdict.recommended_scale)
        self._state = PlacementState.DEFAULT_PLACED
        logger.info("Design placed at %.1fmm (recommended %s)", self._transform.scale, verdict.recommended_scale)
        self._notify()
        return self._state

    def edit(
        self,
        offset_x: Optional[float] = None,
        offset_y: Optional[float] = None,
        scale: Optional[float] = None,
        rotation: Optional[float] = None,
    ) -> PlacementTransform:
        """Applies any subset of fields at once, clamped into the bounds."""
        if self._state is PlacementState.UNINITIALIZED:
            raise NotReady("No printable design to edit yet.")
        if self._state is PlacementState.FINALIZED:
            raise InvalidTransition("The design is finalized and can no longer be edited.")

        changes = {
            name: value for name, value in (
                ("offset_x", offset_x), ("offset_y", offset_y), ("scale", scale), ("rotation", rotation),
            ) if value is not None
        }
        self._transform = clamp_transform(replace(self._transform, **changes), self.bounds)
        self._state = PlacementState.USER_EDITED
        self._notify()
        return self._transform

    def set_offset(self, x: float, y: float) -> PlacementTransform:
        return self.edit(offset_x=x, offset_y=y)

    def set_scale(self, scale: float) -> PlacementTransform:
        return self.edit(scale=scale)

    def set_rotation(self, rotation: float) -> PlacementTransform:
        return self.edit(rotation=rotation)

    def finalize(self) -> DesignSnapshot:
        if self._state is PlacementState.UNINITIALIZED or self._verdict is None:
            raise NotReady("Cannot finalize before a printable verdict has been applied.")
        if self._state is PlacementState.FINALIZED:
            raise InvalidTransition("The design is already finalized.")
        self._state = PlacementState.FINALIZED
        snapshot = DesignSnapshot(self._canonical, self._transform, self._verdict)
        self._notify()
        return snapshot

    def reset(self):
        self._state = PlacementState.UNINITIALIZED
        self._canonical = None
        self._verdict = None
        self._transform = self._default_transform()
        self._notify()
