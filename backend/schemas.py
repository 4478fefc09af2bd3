from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, FrozenSet, Tuple
from datetime import datetime


class Category(str, Enum):
    VEHICULAR_CONTROL = "vehicular-control"
    SOBRIETY_CHECK = "sobriety-check"
    DOCUMENT_CHECK = "document-check"
    FINES = "fines"
    UNSPECIFIED = "unspecified"

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self]


# Display labels shown on the map form
CATEGORY_LABELS = {
    Category.VEHICULAR_CONTROL: "Control vehicular",
    Category.SOBRIETY_CHECK: "Alcoholemia",
    Category.DOCUMENT_CHECK: "Documentos",
    Category.FINES: "Multas",
    Category.UNSPECIFIED: "Sin especificar",
}


class Heat(str, Enum):
    NORMAL = "normal"
    CORROBORATED = "corroborated"


# --- Domain ---

class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float


class Comment(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    author_token_prefix: str
    timestamp: datetime


class ReportDraft(BaseModel):
    """A report as submitted, before the store assigns an id."""

    model_config = ConfigDict(frozen=True)

    location: Location
    category: Category = Category.UNSPECIFIED
    description: Optional[str] = None
    created_at: datetime
    author_token: str
    confirmations: int = 0
    voter_tokens: FrozenSet[str] = frozenset()
    comments: Tuple[Comment, ...] = ()


class Report(ReportDraft):
    id: str
    version: int = 0


# --- API ---

class ReportCreate(BaseModel):
    latitude: float = Field(..., description="Latitude of the checkpoint")
    longitude: float = Field(..., description="Longitude of the checkpoint")
    category: Optional[Category] = Field(None, description="Checkpoint type, defaults to unspecified")
    description: Optional[str] = Field(None, description="Optional details, up to 200 characters")
    token: str = Field(..., description="Opaque device token of the reporter")


class ConfirmRequest(BaseModel):
    token: str = Field(..., description="Opaque device token of the confirming user")


class CommentCreate(BaseModel):
    text: str = Field(..., description="Comment text, up to 120 characters")
    token: str = Field(..., description="Opaque device token of the commenter")


class CommentView(BaseModel):
    text: str
    author: str
    timestamp: datetime


class ReportView(BaseModel):
    id: str
    latitude: float
    longitude: float
    category: Category
    category_label: str
    description: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    author: str
    confirmations: int
    voted: bool = False
    heat: Heat
    comments: List[CommentView] = []


class ConfirmResponse(BaseModel):
    report: ReportView
    applied: bool = Field(..., description="False when the token had already confirmed")


class ReportSummary(BaseModel):
    active: int
    corroborated: int


class CategoryView(BaseModel):
    value: Category
    label: str


class TokenResponse(BaseModel):
    token: str
