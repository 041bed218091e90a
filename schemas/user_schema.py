from typing import List

from pydantic import BaseModel, Field, field_validator

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


class UserCreateSchema(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1, description="RBAC role name label, e.g. pool-admin")

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class UserDescriptor(BaseModel):
    uuid: str
    username: str
    roles: List[str] = Field(default_factory=list)


class UserCreated(BaseModel):
    ref: str
    username: str
    role: str
