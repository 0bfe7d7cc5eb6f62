import logging
import os
import secrets
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.responses import FileResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from checkout import ShopifyCheckout
from config import Settings
from errors import (
    AnalysisUnavailable, InputError, InvalidPlacementValue, KeychainError,
    SegmentationError, StateError, TooLarge, UnsupportedFormat, UploadSuperseded,
)
from gate import OpenAIManufacturabilityGate
from models import ManufacturabilityVerdict
from services import DesignSession, SessionRegistry
from storage import LocalDesignStore

settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

os.makedirs(settings.designs_dir, exist_ok=True)
os.makedirs(settings.models_dir, exist_ok=True)

app = FastAPI(title="Keychain Designer API")

# Saved designs and exported models are served as static files
app.mount("/static", StaticFiles(directory=settings.static_dir), name="static")

gate = OpenAIManufacturabilityGate(api_key=settings.openai_api_key, model=settings.gate_model)
store = LocalDesignStore(settings.designs_dir)
checkout = ShopifyCheckout(settings.shopify_domain, settings.shopify_variant_id)
sessions = SessionRegistry(
    lambda: DesignSession(gate, store, checkout, settings=settings),
    max_sessions=settings.max_sessions,
    ttl=settings.session_ttl,
)


def get_settings() -> Settings:
    return settings


def get_sessions() -> SessionRegistry:
    return sessions


def get_store() -> LocalDesignStore:
    return store


class SessionResponse(BaseModel):
    session_id: str


class PlacementResponse(BaseModel):
    offset_x: float
    offset_y: float
    scale: float
    rotation: float


class VerdictResponse(BaseModel):
    is_printable: bool
    recommended_scale: Optional[float] = None
    suggested_colors: List[str]
    estimated_price: Decimal
    reasoning: str

    @classmethod
    def from_verdict(cls, verdict: ManufacturabilityVerdict) -> "VerdictResponse":
        return cls(
            is_printable=verdict.is_printable,
            recommended_scale=verdict.recommended_scale,
            suggested_colors=list(verdict.suggested_colors),
            estimated_price=verdict.estimated_price,
            reasoning=verdict.reasoning,
        )


class StateResponse(BaseModel):
    session_id: str
    state: str
    generation: int
    placement: PlacementResponse
    verdict: Optional[VerdictResponse] = None
    suggested_colors: List[str]
    canonical_url: Optional[str] = None
    design_id: Optional[str] = None


class PlacementUpdate(BaseModel):
    offset_x: Optional[float] = None
    offset_y: Optional[float] = None
    scale: Optional[float] = None
    rotation: Optional[float] = None


class CheckoutResponse(BaseModel):
    success: bool
    design_id: str
    redirect_url: str


class SavedDesignResponse(BaseModel):
    id: str
    created_at: str
    image_url: str
    placement: PlacementResponse
    suggested_colors: List[str]
    estimated_price: Decimal


def to_http_error(e: KeychainError) -> HTTPException:
    """Maps the pipeline error taxonomy onto HTTP status codes."""
    if isinstance(e, TooLarge):
        status = 413
    elif isinstance(e, UnsupportedFormat):
        status = 415
    elif isinstance(e, (InputError, InvalidPlacementValue)):
        status = 400
    elif isinstance(e, SegmentationError):
        status = 422
    elif isinstance(e, AnalysisUnavailable):
        status = 503
    elif isinstance(e, (StateError, UploadSuperseded)):
        status = 409
    else:
        status = 500

    detail = {"code": e.code, "message": e.message}
    if isinstance(e, SegmentationError):
        detail["suggestion"] = e.suggestion
    return HTTPException(status_code=status, detail=detail)


def _session_or_404(session_id: str, registry: SessionRegistry) -> DesignSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _state(session_id: str, session: DesignSession) -> StateResponse:
    view = session.view()
    t = view.transform
    verdict = session.engine.verdict
    return StateResponse(
        session_id=session_id,
        state=view.state.value,
        generation=session.generation,
        placement=PlacementResponse(offset_x=t.offset_x, offset_y=t.offset_y, scale=t.scale, rotation=t.rotation),
        verdict=VerdictResponse.from_verdict(verdict) if verdict else None,
        suggested_colors=list(view.suggested_colors),
        canonical_url=f"/sessions/{session_id}/canonical.png" if session.canonical else None,
        design_id=session.design_id,
    )


@app.post("/sessions", response_model=SessionResponse)
async def create_session(registry: SessionRegistry = Depends(get_sessions)):
    """Starts a new design session."""
    return {"session_id": registry.create()}


@app.get("/sessions/{session_id}", response_model=StateResponse)
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    session = _session_or_404(session_id, registry)
    return _state(session_id, session)


@app.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    """Discards a session and any work still running for it."""
    if not registry.remove(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@app.post("/sessions/{session_id}/upload", response_model=StateResponse)
async def upload_image(
    session_id: str,
    file: UploadFile = File(...),
    registry: SessionRegistry = Depends(get_sessions),
    config: Settings = Depends(get_settings),
):
    """
    Uploads an image, removes its background, centers it and checks printability.

    A design that cannot be printed is a normal response: the verdict has
    is_printable=false and the reasoning to show the customer.
    """
    session = _session_or_404(session_id, registry)
    # One byte over the limit is enough to reject the file
    contents = await file.read(config.max_upload_bytes + 1)
    try:
        await session.submit_upload(contents)
    except KeychainError as e:
        raise to_http_error(e)
    return _state(session_id, session)


@app.post("/sessions/{session_id}/analyze", response_model=StateResponse)
async def retry_analysis(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    """Retries the printability check on the already processed image."""
    session = _session_or_404(session_id, registry)
    try:
        await session.retry_analysis()
    except KeychainError as e:
        raise to_http_error(e)
    return _state(session_id, session)


@app.patch("/sessions/{session_id}/placement", response_model=StateResponse)
async def update_placement(
    session_id: str,
    update: PlacementUpdate,
    registry: SessionRegistry = Depends(get_sessions),
):
    """Moves, scales or rotates the logo. Values outside the printable range are clamped."""
    session = _session_or_404(session_id, registry)
    try:
        session.update_placement(
            offset_x=update.offset_x,
            offset_y=update.offset_y,
            scale=update.scale,
            rotation=update.rotation,
        )
    except KeychainError as e:
        raise to_http_error(e)
    return _state(session_id, session)


@app.get("/sessions/{session_id}/canonical.png")
async def get_canonical(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    session = _session_or_404(session_id, registry)
    if session.canonical is None:
        raise HTTPException(status_code=404, detail="No processed image")
    return Response(content=session.canonical.to_png(), media_type="image/png")


@app.post("/sessions/{session_id}/checkout", response_model=CheckoutResponse)
async def start_checkout(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    """Locks the design, saves it and returns the store checkout URL."""
    session = _session_or_404(session_id, registry)
    try:
        result = await session.checkout()
    except KeychainError as e:
        raise to_http_error(e)
    return {"success": True, "design_id": result.design_id, "redirect_url": result.redirect_url}


@app.post("/sessions/{session_id}/reset", response_model=StateResponse)
async def reset_session(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    session = _session_or_404(session_id, registry)
    session.reset()
    return _state(session_id, session)


@app.get("/sessions/{session_id}/model.stl")
async def download_model(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    """Downloads the relief STL of a finalized design."""
    session = _session_or_404(session_id, registry)
    try:
        file_path = await session.export_model()
    except KeychainError as e:
        raise to_http_error(e)

    return FileResponse(
        path=file_path,
        media_type='application/vnd.ms-pki.stl',
        filename=os.path.basename(file_path)
    )


@app.get("/admin/designs", response_model=List[SavedDesignResponse])
async def list_designs(
    x_admin_token: Optional[str] = Header(None),
    config: Settings = Depends(get_settings),
    design_store: LocalDesignStore = Depends(get_store),
):
    """Lists every saved design, newest first."""
    if not config.admin_token:
        raise HTTPException(status_code=404, detail="Not found")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, config.admin_token):
        raise HTTPException(status_code=403, detail="Invalid admin token")

    return [
        SavedDesignResponse(
            id=design.id,
            created_at=design.created_at.isoformat(),
            image_url=f"/static/designs/{os.path.basename(design.image_path)}",
            placement=PlacementResponse(
                offset_x=design.offset_x, offset_y=design.offset_y, scale=design.scale, rotation=design.rotation,
            ),
            suggested_colors=list(design.verdict.suggested_colors),
            estimated_price=design.verdict.estimated_price,
        )
        for design in design_store.list_designs()
    ]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
