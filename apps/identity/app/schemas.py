from datetime import datetime

from pydantic import BaseModel, Field


class RequestOtpIn(BaseModel):
    phone: str = Field(min_length=1, max_length=32)


class VerifyOtpIn(BaseModel):
    phone: str = Field(min_length=1, max_length=32)
    otp: str = Field(min_length=1, max_length=16)


# Response bodies keep the camelCase keys mobile clients already consume


class OtpRequestedOut(BaseModel):
    phoneNumber: str
    expiresIn: int


class VerifiedOut(BaseModel):
    accountId: str
    phone: str
    status: str
    token: str


class ProfileOut(BaseModel):
    id: str
    phone: str
    status: str
    createdAt: datetime
