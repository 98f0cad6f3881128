from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)
    variant_id: Optional[str] = Field(default=None, alias="variantId")
    quantity: int = Field(gt=0)
    merchant_id: Optional[str] = Field(default=None, alias="merchantId")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CheckoutItem] = Field(min_length=1)
    shipping_address_id: Optional[str] = Field(default=None, alias="shippingAddressId")
    payment_method: str = Field(alias="paymentMethod", min_length=1)
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")

    @field_validator("payment_method")
    @classmethod
    def payment_method_upper(cls, v: str) -> str:
        return v.strip().upper()


class AbandonRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_ids: List[str] = Field(default_factory=list, alias="orderIds")


class CreatedOrder(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    total: float = 0.0
    merchant_key: str = Field(alias="merchantKey")
    idempotency_key: str = Field(alias="idempotencyKey")


class CheckoutResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    orders: List[CreatedOrder] = Field(default_factory=list)
    complete: bool = False
    message: str = ""
    status_code: Optional[int] = Field(default=None, alias="statusCode")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    retry_after_seconds: Optional[int] = Field(default=None, alias="retryAfterSeconds")

    @property
    def partial(self) -> bool:
        return not self.complete and bool(self.orders)
