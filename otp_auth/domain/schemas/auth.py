from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class SignupIn(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    mobile: Optional[str] = None
    address: Optional[str] = None


class EmailIn(BaseModel):
    email: EmailStr


class VerifyOtpIn(BaseModel):
    email: EmailStr
    # no length check: a malformed code is just another wrong code
    otp: str


class MessageOut(BaseModel):
    message: str
    success: bool = True
