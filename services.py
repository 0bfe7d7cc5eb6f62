import asyncio
import logging
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from centering import center_on_canvas
from checkout import CheckoutAttributes, CheckoutRedirect
from config import MAX_SESSIONS, SESSION_TTL, Settings
from decoder import decode_image
from errors import AnalysisUnavailable, InvalidTransition, NotReady, UploadSuperseded
from gate import ManufacturabilityGate
from isolator import isolate_subject
from models import CanonicalImage, ManufacturabilityVerdict
from placement import DesignSnapshot, PlacementEngine, PlacementState, PlacementTransform, PlacementView
from relief import export_relief_stl
from storage import DesignStore

logger = logging.getLogger(__name__)

VERDICT_CACHE_SIZE = 16


def prepare_canonical(data: bytes, settings: Settings) -> CanonicalImage:
    """Decode, isolate and center an upload. CPU bound; runs off the event loop."""
    image = decode_image(data, max_bytes=settings.max_upload_bytes)
    mask = isolate_subject(image)
    return center_on_canvas(image, mask, canvas_size=settings.canonical_size)


@dataclass(frozen=True)
class PipelineOutcome:
    generation: int
    state: PlacementState
    verdict: ManufacturabilityVerdict

    @property
    def is_printable(self) -> bool:
        return self.verdict.is_printable

    @property
    def reasoning(self) -> str:
        return self.verdict.reasoning


@dataclass(frozen=True)
class CheckoutResult:
    design_id: str
    redirect_url: str
    snapshot: DesignSnapshot


class DesignSession:
    """
    One customer's design, from upload to checkout.

    Every upload gets a new generation number. Starting an upload cancels the
    one in flight, and a pipeline result is only applied while its generation
    is still the latest, so a slow earlier upload can never touch the
    placement of a later one. The canonical image is kept after a failed gate
    call so the analysis can be retried without segmenting again.
    """

    def __init__(
        self,
        gate: ManufacturabilityGate,
        store: DesignStore,
        checkout: CheckoutRedirect,
        settings: Optional[Settings] = None,
        engine: Optional[PlacementEngine] = None,
    ):
        self.gate = gate
        self.store = store
        self.checkout_redirect = checkout
        self.settings = settings or Settings()
        self.engine = engine or PlacementEngine()

        self._generation = 0
        self._inflight: Optional[asyncio.Task] = None
        self._canonical: Optional[CanonicalImage] = None
        self._verdicts: "OrderedDict[str, ManufacturabilityVerdict]" = OrderedDict()
        self._snapshot: Optional[DesignSnapshot] = None
        self.design_id: Optional[str] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def canonical(self) -> Optional[CanonicalImage]:
        return self._canonical

    @property
    def snapshot(self) -> Optional[DesignSnapshot]:
        return self._snapshot

    def view(self) -> PlacementView:
        return self.engine.view()

    def _ensure_current(self, generation: int):
        if generation != self._generation:
            logger.warning("Discarding stale result of upload %d (current is %d)", generation, self._generation)
            raise UploadSuperseded()

    def _cancel_inflight(self):
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None

    def _clear(self):
        self._canonical = None
        self._snapshot = None
        self.design_id = None
        self.engine.reset()

    async def submit_upload(self, data: bytes, timeout: Optional[float] = None) -> PipelineOutcome:
        """
        Runs decode, isolation, centering and the gate for a new upload.

        Returns the outcome, including a non-printable verdict. Raises the
        input, segmentation or analysis error of the stage that failed, or
        UploadSuperseded if a newer upload replaced this one.
        """
        self._generation += 1
        generation = self._generation
        self._cancel_inflight()
        self._clear()

        task = asyncio.ensure_future(self._run_pipeline(generation, data, timeout))
        self._inflight = task
        return await self._wait_for(task, generation)

    async def _wait_for(self, task: asyncio.Task, generation: int) -> PipelineOutcome:
        # Shielded so a caller that stops waiting does not cancel work other callers share.
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if generation != self._generation:
                raise UploadSuperseded()
            raise
        finally:
            if self._inflight is task and task.done():
                self._inflight = None

    async def _run_pipeline(self, generation: int, data: bytes, timeout: Optional[float]) -> PipelineOutcome:
        canonical = await asyncio.to_thread(prepare_canonical, data, self.settings)
        self._ensure_current(generation)
        self._canonical = canonical
        self.engine.load_canonical(canonical)
        return await self._judge(generation, canonical, timeout)

    async def retry_analysis(self, timeout: Optional[float] = None) -> PipelineOutcome:
        """
        Asks the gate again about the current canonical image.

        While an upload or another retry is still running, waits for that
        result instead of calling the gate a second time.
        """
        generation = self._generation
        if self._inflight is not None and not self._inflight.done():
            return await self._wait_for(self._inflight, generation)
        if self._canonical is None:
            raise NotReady("Upload an image first.")
        if self.engine.verdict is not None:
            raise InvalidTransition("This image has already been analyzed.")

        task = asyncio.ensure_future(self._judge(generation, self._canonical, timeout))
        self._inflight = task
        return await self._wait_for(task, generation)

    async def _judge(self, generation: int, canonical: CanonicalImage, timeout: Optional[float]) -> PipelineOutcome:
        verdict = self._verdicts.get(canonical.digest)
        if verdict is None:
            verdict = await self._call_gate(canonical, timeout)
            self._remember(canonical.digest, verdict)
        else:
            self._verdicts.move_to_end(canonical.digest)
            logger.info("Reusing verdict for identical image %s", canonical.digest[:12])
        self._ensure_current(generation)

        state = self.engine.apply_verdict(verdict)
        return PipelineOutcome(generation=generation, state=state, verdict=verdict)

    def _remember(self, digest: str, verdict: ManufacturabilityVerdict):
        # A rejected image gets a fresh judgment when uploaded again.
        if not verdict.is_printable:
            return
        self._verdicts[digest] = verdict
        while len(self._verdicts) > VERDICT_CACHE_SIZE:
            self._verdicts.popitem(last=False)

    async def _call_gate(self, canonical: CanonicalImage, timeout: Optional[float]) -> ManufacturabilityVerdict:
        if timeout is None:
            timeout = self.settings.gate_timeout

        def analyze():
            return self.gate.analyze(canonical.to_png(), timeout)

        try:
            return await asyncio.wait_for(asyncio.to_thread(analyze), timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Manufacturability analysis timed out after %.1fs", timeout)
            raise AnalysisUnavailable(f"The analysis timed out after {timeout:g}s. Please retry.") from e

    def update_placement(
        self,
        offset_x: Optional[float] = None,
        offset_y: Optional[float] = None,
        scale: Optional[float] = None,
        rotation: Optional[float] = None,
    ) -> PlacementTransform:
        return self.engine.edit(offset_x=offset_x, offset_y=offset_y, scale=scale, rotation=rotation)

    async def checkout(self) -> CheckoutResult:
        """
        Finalizes the placement, saves the design and builds the checkout URL.

        A failed save leaves the design finalized, so calling this again
        retries the save with the same snapshot.
        """
        if self.design_id is not None:
            raise InvalidTransition("This design has already been checked out.")
        if self._snapshot is None:
            self._snapshot = self.engine.finalize()

        snapshot = self._snapshot
        design_id = await asyncio.to_thread(self.store.save, snapshot)
        self.design_id = design_id
        url = self.checkout_redirect.redirect_url(design_id, CheckoutAttributes.from_snapshot(snapshot))
        logger.info("Design %s ready for checkout", design_id)
        return CheckoutResult(design_id=design_id, redirect_url=url, snapshot=snapshot)

    async def export_model(self, models_dir: Optional[str] = None) -> str:
        """Writes the relief STL of the finalized design and returns its path."""
        if self._snapshot is None:
            raise NotReady("Finalize the design before exporting the model.")
        models_dir = models_dir or self.settings.models_dir
        os.makedirs(models_dir, exist_ok=True)
        name = self.design_id or f"draft-{self._generation}"
        output_path = os.path.join(models_dir, f"{name}_relief.stl")
        return await asyncio.to_thread(export_relief_stl, self._snapshot, output_path)

    def reset(self):
        """Drops the current upload, any in-flight work and the placement."""
        self._generation += 1
        self._cancel_inflight()
        self._clear()


class SessionRegistry:
    """
    In-memory sessions keyed by an opaque id.

    Sessions idle for longer than ttl seconds expire, and once max_sessions
    are open the least recently used one is evicted to make room. Dropped
    sessions are reset so their in-flight work is cancelled.
    """

    def __init__(
        self,
        factory: Callable[[], DesignSession],
        max_sessions: int = MAX_SESSIONS,
        ttl: float = SESSION_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.factory = factory
        self.max_sessions = max_sessions
        self.ttl = ttl
        self.clock = clock
        # Least recently used first; values are (session, last access time).
        self._sessions: "OrderedDict[str, Tuple[DesignSession, float]]" = OrderedDict()

    def _drop(self, session_id: str, reason: str):
        session, _ = self._sessions.pop(session_id)
        session.reset()
        logger.info("Session %s %s", session_id, reason)

    def _expire(self, now: float):
        while self._sessions:
            session_id, (_, last_seen) = next(iter(self._sessions.items()))
            if now - last_seen < self.ttl:
                break
            self._drop(session_id, "expired")

    def create(self) -> str:
        now = self.clock()
        self._expire(now)
        while len(self._sessions) >= self.max_sessions:
            self._drop(next(iter(self._sessions)), "evicted")

        session_id = uuid.uuid4().hex
        self._sessions[session_id] = (self.factory(), now)
        return session_id

    def get(self, session_id: str) -> Optional[DesignSession]:
        now = self.clock()
        self._expire(now)
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        self._sessions[session_id] = (entry[0], now)
        self._sessions.move_to_end(session_id)
        return entry[0]

    def remove(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        self._drop(session_id, "closed")
        return True

    def __len__(self):
        return len(self._sessions)
