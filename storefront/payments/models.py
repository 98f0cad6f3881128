from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentVerification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_paid: bool = Field(default=False, alias="isPaid")
    currency: Optional[str] = None
    message: Optional[str] = None
    expired: Optional[bool] = None


class KHQRResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    qr_string: Optional[str] = Field(default=None, alias="qrString")
    md5: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
