from pydantic import BaseModel, Field


class PriceRequest(BaseModel):
    voucher_claim_ids: list[str] = Field(default_factory=list)
    selected_promo_id: str | None = None


class PricedLine(BaseModel):
    menu_id: str
    name: str | None = None
    category: str | None = None
    quantity: int
    unit_price: int
    addons_total: int = 0
    is_free: bool = False
    line_discount: int = 0


class LedgerEntryRead(BaseModel):
    order_index: int
    source: str
    reference_id: str
    label: str
    target: str
    amount: int
    allocations: list[int] = Field(default_factory=list)


class PriceResponse(BaseModel):
    lines: list[PricedLine]
    totals: dict[str, int]
    ledger: list[LedgerEntryRead] = Field(default_factory=list)
    chosen_claim_ids: list[str] = Field(default_factory=list)
    promo: dict | None = None
    reasons: list[dict] = Field(default_factory=list)
