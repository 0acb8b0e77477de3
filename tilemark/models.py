from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, List, Tuple


class Color(BaseModel):
    """Straight (non-premultiplied) RGBA colour."""

    model_config = ConfigDict(frozen=True)

    r: int = Field(ge=0, le=255)
    g: int = Field(ge=0, le=255)
    b: int = Field(ge=0, le=255)
    a: int = Field(ge=0, le=255)

    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)


# --------------------
# Object lambda webhook payload
# --------------------

class ObjectContext(BaseModel):
    inputS3Url: str = Field(min_length=1)
    outputRoute: str = Field(min_length=1)
    outputToken: str = Field(min_length=1)


class UserIdentity(BaseModel):
    accessKeyId: Optional[str] = None
    principalId: Optional[str] = None
    type: Optional[str] = None


class UserRequest(BaseModel):
    url: str
    headers: Dict[str, List[str]] = Field(default_factory=dict)


class WebhookPayload(BaseModel):
    getObjectContext: ObjectContext
    userRequest: UserRequest
    protocolVersion: Optional[str] = None
    userIdentity: Optional[UserIdentity] = None


class TransformRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_url: str
    output_route: str
    output_token: str
    watermark_text: str


# --------------------
# Responses
# --------------------

class ErrorResponse(BaseModel):
    status: str = "error"
    kind: str
    stage: str
    message: str


class HealthResponse(BaseModel):
    status: str
    workers: int
    font: str
