# schemas.py
import datetime
import math
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

# Column widths of digest_events; longer input is cut, not rejected.
STRING_LIMITS = {
    "guild_id": 64,
    "event_type": 16,
    "chain": 16,
    "contract": 120,
    "token_id": 64,
    "buyer": 120,
    "seller": 120,
    "tx_hash": 140,
}
LOWERCASE_FIELDS = ("contract", "buyer", "seller", "tx_hash")


def clean_str(value: Any, limit: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:limit]


def clean_num(value: Any) -> Optional[float]:
    """Finite number or None. Accepts numeric strings."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class DigestEventIn(BaseModel):
    """
    A mint/sale fact as handed to the digest store.
    Several key spellings are accepted for each field.
    """
    guild_id: Optional[str] = Field(None, validation_alias=AliasChoices("guild_id", "guildId", "community_id", "server_id"))
    event_type: Optional[str] = Field(None, validation_alias=AliasChoices("event_type", "eventType", "type", "kind"))
    chain: Optional[str] = Field(None, validation_alias=AliasChoices("chain", "network"))
    contract: Optional[str] = Field(None, validation_alias=AliasChoices("contract", "contract_address", "contractAddress", "address"))
    token_id: Optional[str] = Field(None, validation_alias=AliasChoices("token_id", "tokenId"))
    amount_native: Optional[float] = Field(None, validation_alias=AliasChoices("amount_native", "amountNative", "amount"))
    amount_eth: Optional[float] = Field(None, validation_alias=AliasChoices("amount_eth", "amountEth"))
    amount_usd: Optional[float] = Field(None, validation_alias=AliasChoices("amount_usd", "amountUsd"))
    buyer: Optional[str] = Field(None, validation_alias=AliasChoices("buyer", "to"))
    seller: Optional[str] = Field(None, validation_alias=AliasChoices("seller", "from"))
    tx_hash: Optional[str] = Field(None, validation_alias=AliasChoices("tx_hash", "txHash", "transaction_hash", "hash"))
    ts: Optional[datetime.datetime] = Field(None, validation_alias=AliasChoices("ts", "timestamp"))

    class Config:
        extra = "ignore"

    @field_validator(*STRING_LIMITS.keys(), mode="before")
    @classmethod
    def _clean_strings(cls, value, info):
        text = clean_str(value, STRING_LIMITS[info.field_name])
        if text is not None and info.field_name in LOWERCASE_FIELDS:
            text = text.lower()
        return text

    @field_validator("amount_native", "amount_eth", "amount_usd", mode="before")
    @classmethod
    def _clean_numbers(cls, value):
        return clean_num(value)

    @field_validator("ts", mode="before")
    @classmethod
    def _clean_ts(cls, value):
        if value is None or isinstance(value, datetime.datetime):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # epoch millis from JS-style producers, otherwise seconds
            seconds = value / 1000 if value > 1e11 else value
            return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)
        try:
            return datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None


class RecordResult(BaseModel):
    inserted: bool
    reason: Optional[str] = None


class SaleLine(BaseModel):
    contract: Optional[str] = None
    token_id: Optional[str] = None
    chain: Optional[str] = None
    amount_eth: Optional[float] = None
    amount_usd: Optional[float] = None
    buyer: Optional[str] = None
    seller: Optional[str] = None
    tx_hash: Optional[str] = None
    ts: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class DigestSummary(BaseModel):
    guild_id: str
    window_hours: int
    row_count: int = 0
    mint_count: int = 0
    sale_count: int = 0
    nft_sale_count: int = 0
    swap_count: int = 0
    token_buy_count: int = 0
    token_sell_count: int = 0
    total_eth: float = 0.0
    total_usd: float = 0.0
    most_active_contract: Optional[str] = None
    most_active_count: int = 0
    most_active_display: str = "N/A"
    top_sale: Optional[SaleLine] = None
    top_sale_display: str = "N/A"
    top_swap: Optional[SaleLine] = None
    top_swap_display: str = "N/A"
    chain_counts: Dict[str, int] = Field(default_factory=dict)
    chain_display: str = "N/A"
    recent_sales: List[str] = Field(default_factory=list)
    newest_ts: Optional[datetime.datetime] = None
    oldest_ts: Optional[datetime.datetime] = None


class TrackedContractBase(BaseModel):
    name: str
    address: str
    chain: str = "base"
    mint_price: Optional[float] = None
    mint_token: Optional[str] = None
    mint_token_symbol: Optional[str] = None


class TrackedContractCreate(TrackedContractBase):
    pass


class TrackedContract(TrackedContractBase):
    id: int
    channel_ids: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class TrackedToken(BaseModel):
    address: str
    guild_id: str
    name: str
    chain: str = "base"
    channel_id: Optional[str] = None

    class Config:
        from_attributes = True


class DigestSettingsUpdate(BaseModel):
    guild_id: str
    channel_id: str
    tz: str = "UTC"
    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)
    hours_window: int = Field(24, ge=1, le=168)
    include_mints: bool = True
    include_sales: bool = True
    enabled: bool = True


class DigestSettings(DigestSettingsUpdate):
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True
