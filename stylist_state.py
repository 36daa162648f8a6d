"""Session-local state for the virtual stylist page.

A ``StylistSession`` holds everything one browser session sees: the uploaded
garment, the analysis, the per-(style, visual type) generation slots, the
selected tab and the editor modal. Routes mutate it through the transition
methods below and render ``snapshot()``.

Service calls happen outside these methods. A call starts with a ``begin_*``
transition that hands back the image token, and reports back with
``complete_*``/``fail_*`` carrying that token; if the garment image changed in
the meantime the late result is dropped.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from image_intake import ClothingItemImage, InlineImage

logger = logging.getLogger(__name__)

ANALYSIS_ERROR_MESSAGE = "We couldn't analyze that image. Please try another clearer photo."
GENERATION_ERROR_MESSAGE = "Failed to generate image"
EDIT_ERROR_MESSAGE = "Failed to edit image. Please try a different prompt."


class OutfitStyle(str, Enum):
    CASUAL = "Casual"
    BUSINESS = "Business"
    NIGHT_OUT = "Night Out"


class VisualType(str, Enum):
    FLAT_LAY = "flat-lay"
    ON_MODEL = "on-model"


class AnalysisStatus(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    FAILED = "failed"


class VisualStatus(str, Enum):
    UNSTARTED = "unstarted"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class InvalidTransition(Exception):
    """The requested action is not allowed from the current state."""


class StaleResult(Exception):
    """A service result arrived for an image that is no longer current."""


# ---------------------------------------------------------------------------
# Analysis records
# ---------------------------------------------------------------------------

class WireModel(BaseModel):
    """Immutable record that reads and writes the service's camelCase names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ItemAnalysis(WireModel):
    description: str
    category: str
    base_color: str


class OutfitPlan(WireModel):
    style: OutfitStyle
    description: str
    key_items: List[str]
    color_palette: List[str]
    why_it_works: str


class AnalysisResult(WireModel):
    item_analysis: ItemAnalysis
    outfit_plans: List[OutfitPlan]

    @field_validator("outfit_plans")
    @classmethod
    def one_plan_per_style(cls, plans: List[OutfitPlan]) -> List[OutfitPlan]:
        by_style = {plan.style: plan for plan in plans}
        if len(plans) != len(OutfitStyle) or len(by_style) != len(OutfitStyle):
            got = [plan.style.value for plan in plans]
            raise ValueError(f"Expected exactly one plan per style, got {got}")
        return [by_style[style] for style in OutfitStyle]

    def plan_for(self, style: OutfitStyle) -> OutfitPlan:
        for plan in self.outfit_plans:
            if plan.style == style:
                return plan
        raise KeyError(style)


# ---------------------------------------------------------------------------
# Generation and editor slots
# ---------------------------------------------------------------------------

@dataclass
class VisualState:
    image: Optional[InlineImage] = None
    loading: bool = False
    error: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self.image.data_url if self.image else None

    @property
    def status(self) -> VisualStatus:
        if self.loading:
            return VisualStatus.LOADING
        if self.image is not None:
            return VisualStatus.READY
        if self.error:
            return VisualStatus.FAILED
        return VisualStatus.UNSTARTED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "url": self.url,
            "loading": self.loading,
            "error": self.error,
        }


@dataclass
class GeneratedOutfitVisuals:
    style: OutfitStyle
    flat_lay: VisualState = field(default_factory=VisualState)
    on_model: VisualState = field(default_factory=VisualState)

    def slot(self, visual_type: VisualType) -> VisualState:
        return self.flat_lay if visual_type == VisualType.FLAT_LAY else self.on_model

    def to_dict(self) -> dict:
        return {
            "style": self.style.value,
            VisualType.FLAT_LAY.value: self.flat_lay.to_dict(),
            VisualType.ON_MODEL.value: self.on_model.to_dict(),
        }


def empty_visuals() -> Dict[OutfitStyle, GeneratedOutfitVisuals]:
    return {style: GeneratedOutfitVisuals(style=style) for style in OutfitStyle}


@dataclass
class EditorState:
    current_image: InlineImage
    prompt: str = ""
    processing: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "open": True,
            "url": self.current_image.data_url,
            "prompt": self.prompt,
            "processing": self.processing,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class StylistSession:
    def __init__(self):
        self.lock = threading.Lock()
        self.image: Optional[ClothingItemImage] = None
        self.image_token = 0
        self.analysis_status = AnalysisStatus.IDLE
        self.analysis: Optional[AnalysisResult] = None
        self.analysis_error: Optional[str] = None
        self.visuals = empty_visuals()
        self.active_style = OutfitStyle.CASUAL
        self.visual_types = {style: VisualType.FLAT_LAY for style in OutfitStyle}
        self.editor: Optional[EditorState] = None

    # --- intake ---

    def _reset_downstream(self):
        self.image_token += 1
        self.analysis_status = AnalysisStatus.IDLE
        self.analysis = None
        self.analysis_error = None
        self.visuals = empty_visuals()
        self.active_style = OutfitStyle.CASUAL
        self.visual_types = {style: VisualType.FLAT_LAY for style in OutfitStyle}
        self.editor = None

    def set_image(self, image: ClothingItemImage):
        self.image = image
        self._reset_downstream()
        logger.info("[STATE] New item image (%s, %d bytes); analysis, visuals and editor reset.",
                    image.mime_type, len(image.data))

    def remove_image(self):
        self.image = None
        self._reset_downstream()
        logger.info("[STATE] Item image removed.")

    def _require_image(self) -> ClothingItemImage:
        if self.image is None:
            raise InvalidTransition("Upload an item image first")
        return self.image

    def _check_token(self, token: int):
        if token != self.image_token:
            raise StaleResult("Item image changed while the request was in flight")

    # --- analysis ---

    def begin_analysis(self) -> int:
        self._require_image()
        if self.analysis_status == AnalysisStatus.ANALYZING:
            raise InvalidTransition("Analysis already in progress")
        if self.analysis_status == AnalysisStatus.ANALYZED:
            raise InvalidTransition("Item already analyzed; upload a new image to restart")
        self.analysis_status = AnalysisStatus.ANALYZING
        self.analysis_error = None
        self.visuals = empty_visuals()
        return self.image_token

    def complete_analysis(self, token: int, result: AnalysisResult):
        self._check_token(token)
        self.analysis = result
        self.analysis_status = AnalysisStatus.ANALYZED

    def fail_analysis(self, token: int, message: str = ANALYSIS_ERROR_MESSAGE):
        self._check_token(token)
        self.analysis = None
        self.analysis_status = AnalysisStatus.FAILED
        self.analysis_error = message

    # --- visual generation ---

    def begin_generation(self, style: OutfitStyle, visual_type: VisualType) -> int:
        self._require_image()
        if self.analysis is None:
            raise InvalidTransition("Analyze the item before generating visuals")
        slot = self.visuals[style].slot(visual_type)
        if slot.loading:
            raise InvalidTransition(f"{style.value} {visual_type.value} is already generating")
        slot.image = None
        slot.loading = True
        slot.error = None
        return self.image_token

    def complete_generation(self, token: int, style: OutfitStyle,
                            visual_type: VisualType, image: InlineImage):
        self._check_token(token)
        slot = self.visuals[style].slot(visual_type)
        slot.image = image
        slot.loading = False
        slot.error = None

    def fail_generation(self, token: int, style: OutfitStyle, visual_type: VisualType,
                        message: str = GENERATION_ERROR_MESSAGE):
        self._check_token(token)
        slot = self.visuals[style].slot(visual_type)
        slot.image = None
        slot.loading = False
        slot.error = message

    # --- tabs ---

    def select_style(self, style: OutfitStyle):
        self.active_style = style

    def select_visual_type(self, style: OutfitStyle, visual_type: VisualType):
        self.visual_types[style] = visual_type

    def active_plan(self) -> Optional[OutfitPlan]:
        if self.analysis is None:
            return None
        return self.analysis.plan_for(self.active_style)

    # --- editor ---

    def open_editor(self, target: InlineImage):
        self.editor = EditorState(current_image=target)

    def _require_editor(self) -> EditorState:
        if self.editor is None:
            raise InvalidTransition("Editor is not open")
        return self.editor

    def begin_edit(self, prompt: str) -> EditorState:
        editor = self._require_editor()
        if editor.processing:
            raise InvalidTransition("An edit is already in progress")
        editor.prompt = prompt
        editor.processing = True
        editor.error = None
        return editor

    def complete_edit(self, editor: EditorState, image: InlineImage):
        if editor is not self.editor:
            raise StaleResult("Editor was closed or reopened during the edit")
        editor.current_image = image
        editor.prompt = ""
        editor.processing = False

    def fail_edit(self, editor: EditorState, message: str = EDIT_ERROR_MESSAGE):
        if editor is not self.editor:
            raise StaleResult("Editor was closed or reopened during the edit")
        editor.processing = False
        editor.error = message

    def close_editor(self):
        self.editor = None

    # --- rendering ---

    def snapshot(self) -> dict:
        plan = self.active_plan()
        return {
            "image": {
                "url": self.image.data_url,
                "mimeType": self.image.mime_type,
                "filename": self.image.filename,
            } if self.image else None,
            "analysis": {
                "status": self.analysis_status.value,
                "error": self.analysis_error,
                "result": self.analysis.to_wire() if self.analysis else None,
            },
            "visuals": {style.value: v.to_dict() for style, v in self.visuals.items()},
            "view": {
                "activeStyle": self.active_style.value,
                "visualTypes": {s.value: t.value for s, t in self.visual_types.items()},
                "activePlan": plan.to_wire() if plan else None,
            },
            "editor": self.editor.to_dict() if self.editor else {"open": False},
        }


class SessionRegistry:
    """In-memory map of browser sessions; nothing survives a restart.

    Sessions idle for longer than ``idle_seconds`` are dropped, and when more
    than ``max_sessions`` are held the least recently used ones go first.
    """

    def __init__(self, max_sessions: int = 100, idle_seconds: float = 3600, clock=time.monotonic):
        self.max_sessions = max_sessions
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._sessions: "OrderedDict[str, tuple]" = OrderedDict()
        self._lock = threading.RLock()

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def get(self, session_id: str) -> StylistSession:
        with self._lock:
            now = self._clock()
            entry = self._sessions.pop(session_id, None)
            session = entry[0] if entry else StylistSession()
            self._sessions[session_id] = (session, now)
            self._evict(now)
            return session

    def _evict(self, now: float):
        for session_id, (_, last_seen) in list(self._sessions.items()):
            if now - last_seen <= self.idle_seconds:
                break
            logger.info("[STATE] Session %s idle for %.0fs; dropping.", session_id[:8], now - last_seen)
            self.discard(session_id)
        while len(self) > self.max_sessions:
            oldest = next(iter(self._sessions))
            logger.info("[STATE] %d sessions held; dropping least recent %s.", len(self), oldest[:8])
            self.discard(oldest)

    def discard(self, session_id: str):
        with self._lock:
            self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
