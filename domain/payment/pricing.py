"""
套餐与定价 - 各渠道的价格表及后台可变配置
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from domain.common.exceptions import PaymentValidationError


class TierId(str, Enum):
    STARTER = "starter"
    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(frozen=True)
class Tier:
    id: TierId
    price_rub: Decimal
    photos: int


TIERS: dict[TierId, Tier] = {
    TierId.STARTER: Tier(TierId.STARTER, Decimal("499"), 7),
    TierId.STANDARD: Tier(TierId.STANDARD, Decimal("999"), 15),
    TierId.PREMIUM: Tier(TierId.PREMIUM, Decimal("1499"), 23),
}

DEFAULT_STARS_PRICING: dict[TierId, int] = {
    TierId.STARTER: 99,
    TierId.STANDARD: 199,
    TierId.PREMIUM: 299,
}

DEFAULT_TON_PRICING: dict[TierId, Decimal] = {
    TierId.STARTER: Decimal("1.5"),
    TierId.STANDARD: Decimal("3.0"),
    TierId.PREMIUM: Decimal("4.5"),
}


def get_tier(tier_id: Any) -> Tier:
    """解析套餐ID；未知套餐在任何外部调用之前拒绝"""
    try:
        return TIERS[TierId(tier_id)]
    except ValueError:
        raise PaymentValidationError(
            f"Invalid tier: {tier_id}",
            field="tier_id",
            details={"tier_id": str(tier_id)},
        ) from None


@dataclass
class ProviderMethodConfig:
    enabled: bool
    pricing: dict[TierId, Any] = field(default_factory=dict)
    wallet_address: Optional[str] = None


@dataclass
class PaymentMethodsConfig:
    """
    后台可修改的支付方式配置（admin_settings.payment_methods）

    缺失的行或键使用硬编码默认值：
    tbank 默认开启，stars/ton 默认关闭
    """

    tbank: ProviderMethodConfig
    stars: ProviderMethodConfig
    ton: ProviderMethodConfig

    @classmethod
    def defaults(cls) -> "PaymentMethodsConfig":
        return cls.from_dict(None)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "PaymentMethodsConfig":
        raw = raw or {}
        tbank = raw.get("tbank") or {}
        stars = raw.get("stars") or {}
        ton = raw.get("ton") or {}

        stars_pricing = dict(DEFAULT_STARS_PRICING)
        for key, value in (stars.get("pricing") or {}).items():
            tier = _tier_or_none(key)
            if tier is not None and value is not None:
                stars_pricing[tier] = int(value.get("stars") if isinstance(value, Mapping) else value)

        ton_pricing = dict(DEFAULT_TON_PRICING)
        for key, value in (ton.get("pricing") or {}).items():
            tier = _tier_or_none(key)
            if tier is not None and value is not None:
                ton_pricing[tier] = Decimal(str(value.get("ton") if isinstance(value, Mapping) else value))

        return cls(
            tbank=ProviderMethodConfig(enabled=bool(tbank.get("enabled", True))),
            stars=ProviderMethodConfig(enabled=bool(stars.get("enabled", False)), pricing=stars_pricing),
            ton=ProviderMethodConfig(
                enabled=bool(ton.get("enabled", False)),
                pricing=ton_pricing,
                wallet_address=ton.get("wallet_address") or ton.get("walletAddress") or "",
            ),
        )

    def for_provider(self, provider: str) -> ProviderMethodConfig:
        return getattr(self, provider)


def _tier_or_none(key: Any) -> Optional[TierId]:
    try:
        return TierId(key)
    except ValueError:
        return None
