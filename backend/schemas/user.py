from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class Credentials(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, value: str) -> str:
        return value.strip().lower()


# Self-registration always yields a customer; staff are promoted by an admin
class Registration(Credentials):
    password: str = Field(min_length=8, max_length=72)
    full_name: Optional[str] = Field(None, max_length=120)


class Account(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: EmailStr
    role: str
    full_name: Optional[str] = None


class AccessToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str
