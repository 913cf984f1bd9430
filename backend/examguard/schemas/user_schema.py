from fastapi_users import schemas
import uuid
from pydantic import BaseModel


class UserRead(schemas.BaseUser[uuid.UUID]):
    full_name: str | None = None


class UserCreate(schemas.BaseUserCreate):
    full_name: str | None = None


class UserUpdate(schemas.BaseUserUpdate):
    full_name: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str
