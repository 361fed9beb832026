from typing import List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime

class _CamelModel(BaseModel):
    # Wire names are camelCase; Python code constructs by field name
    model_config = ConfigDict(populate_by_name=True)

class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)

class UserLoginWithDevice(_CamelModel):
    email: EmailStr
    password: str
    device_id: Optional[str] = Field(default=None, alias="deviceId", min_length=1, max_length=128)

class UserOut(BaseModel):
    id: int
    email: str
    role: str

    model_config = ConfigDict(from_attributes=True)

class TokenPairOut(_CamelModel):
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")

class LoginOut(TokenPairOut):
    device_id: str = Field(alias="deviceId")
    token_type: str = Field(default="bearer", alias="tokenType")

class RefreshTokenRequest(_CamelModel):
    refresh_token: str = Field(alias="refreshToken", min_length=1)

class CsrfTokenOut(_CamelModel):
    csrf_token: str = Field(alias="csrfToken")

class SessionInfo(_CamelModel):
    device_id: str = Field(alias="deviceId")
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")

class SessionInfoList(BaseModel):
    sessions: List[SessionInfo]
