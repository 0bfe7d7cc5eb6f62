import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from pydantic import BaseModel

from errors import PersistenceError
from models import ManufacturabilityVerdict
from placement import DesignSnapshot, PlacementTransform

logger = logging.getLogger(__name__)


class SavedDesign(BaseModel):
    id: str
    created_at: datetime
    image_path: str
    offset_x: float
    offset_y: float
    scale: float
    rotation: float
    verdict: ManufacturabilityVerdict

    @property
    def transform(self) -> PlacementTransform:
        return PlacementTransform(self.offset_x, self.offset_y, self.scale, self.rotation)


class DesignStore(Protocol):
    """Write-once store for finalized designs."""

    def save(self, snapshot: DesignSnapshot) -> str:
        ...

    def list_designs(self) -> List[SavedDesign]:
        ...


class LocalDesignStore:
    """Keeps each design as <id>.png plus <id>.json in one directory."""

    def __init__(self, designs_dir: str = "static/designs"):
        self.designs_dir = designs_dir
        os.makedirs(self.designs_dir, exist_ok=True)

    def _path(self, design_id: str, ext: str) -> str:
        return os.path.join(self.designs_dir, f"{design_id}.{ext}")

    def save(self, snapshot: DesignSnapshot) -> str:
        if snapshot.canonical is None:
            raise PersistenceError("A design cannot be saved without its image.")

        design_id = uuid.uuid4().hex
        transform = snapshot.transform
        record = SavedDesign(
            id=design_id,
            created_at=datetime.now(timezone.utc),
            image_path=self._path(design_id, "png"),
            offset_x=transform.offset_x,
            offset_y=transform.offset_y,
            scale=transform.scale,
            rotation=transform.rotation,
            verdict=snapshot.verdict,
        )

        try:
            with open(record.image_path, "wb") as f:
                f.write(snapshot.canonical.to_png())
            tmp_path = self._path(design_id, "json.tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(by_alias=True))
            os.replace(tmp_path, self._path(design_id, "json"))
        except OSError as e:
            logger.error("Failed to save design %s", design_id, exc_info=True)
            raise PersistenceError(f"Failed to save design: {e}") from e

        logger.info("Saved design %s (%.1fmm, %d colors)", design_id, transform.scale, len(snapshot.verdict.suggested_colors))
        return design_id

    def get(self, design_id: str) -> Optional[SavedDesign]:
        path = self._path(design_id, "json")
        if not os.path.exists(path):
            return None
        with open(path, encoding="utf-8") as f:
            return SavedDesign.model_validate(json.load(f))

    def list_designs(self) -> List[SavedDesign]:
        """All saved designs, newest first."""
        designs = []
        for name in os.listdir(self.designs_dir):
            if name.endswith(".json"):
                design = self.get(name[:-len(".json")])
                if design is not None:
                    designs.append(design)
        return sorted(designs, key=lambda d: d.created_at, reverse=True)
