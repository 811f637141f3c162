from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from synodic.service.providers import ChatTurn

# Bounds on untrusted request bodies
MAX_HISTORY_ITEMS = 1000
MAX_STRING_LENGTH = 65536


class ErrorBody(BaseModel):
    error: str
    code: str


class PublicUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    email: str
    created_at: str = Field(alias="createdAt")


# Field presence is checked by the auth service so every missing-field case
# gets the same 400 body; pydantic only rejects wrong types here.
class SignupRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)


class SigninRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)
    remember_me: bool = Field(default=False, alias="rememberMe")


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=320)
    code: Optional[str] = Field(default=None, max_length=32)
    new_password: Optional[str] = Field(default=None, alias="newPassword", max_length=1024)


class AuthResponse(BaseModel):
    token: str
    user: PublicUser


class VerifyResponse(BaseModel):
    user: PublicUser


class ForgotPasswordResponse(BaseModel):
    message: str
    dev_code: Optional[str] = Field(default=None, serialization_alias="devCode")


class MessageResponse(BaseModel):
    message: str


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=MAX_STRING_LENGTH)
    timestamp: Optional[Any] = None

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.content)


class ChatRequest(BaseModel):
    # Left untyped so the chat router decides what counts as a valid message
    message: Any = None
    history: List[ChatMessage] = Field(default_factory=list, max_length=MAX_HISTORY_ITEMS)


class ChatResponse(BaseModel):
    response: str
    provider: str


class HealthResponse(BaseModel):
    status: str
    provider: str
    timestamp: str
