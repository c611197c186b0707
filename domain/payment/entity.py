"""
支付领域实体 - 支付记录（一次购买尝试）
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException


class PaymentProvider(str, Enum):
    """支付渠道（封闭集合）"""
    TBANK = "tbank"    # 银行卡/SBP 收单，RUB
    STARS = "stars"    # Telegram Stars，XTR
    TON = "ton"        # TON 区块链


class Currency(str, Enum):
    RUB = "RUB"
    XTR = "XTR"
    TON = "TON"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"           # 待支付
    PROCESSING = "processing"     # 链上已匹配，等待确认数
    SUCCEEDED = "succeeded"       # 支付成功
    CANCELED = "canceled"         # 已取消
    REFUNDED = "refunded"         # 已退款
    REFUNDING = "refunding"       # 退款中
    EXPIRED = "expired"           # 汇率锁定过期
    PARTIAL = "partial"           # 部分退款


class RefundStatus(str, Enum):
    """退款状态枚举"""
    NONE = "none"
    PENDING = "pending"           # 等待人工退款
    PROCESSING = "processing"     # 持有退款锁
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class RateSource(str, Enum):
    LIVE = "live"
    CACHED_FALLBACK = "cached_fallback"
    EMERGENCY_FALLBACK = "emergency_fallback"
    MANUAL = "manual"
    FIXED = "fixed"


# 允许的状态转换；其余转换一律拒绝（状态单调）
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.CANCELED,
        PaymentStatus.EXPIRED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.SUCCEEDED,
        PaymentStatus.CANCELED,
    }),
    PaymentStatus.SUCCEEDED: frozenset({
        PaymentStatus.REFUNDING,
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIAL,
    }),
    PaymentStatus.REFUNDING: frozenset({
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIAL,
        PaymentStatus.SUCCEEDED,
    }),
    PaymentStatus.PARTIAL: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_for(target: PaymentStatus) -> tuple[PaymentStatus, ...]:
    """返回可以转换到 target 的全部来源状态（用于条件更新的 WHERE 子句）"""
    return tuple(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


@dataclass
class Payment:
    """
    支付记录 - 永久审计轨迹，永不删除

    业务规则：
    1. amount 始终以结算货币（RUB）表示
    2. original_amount/original_currency 为实际收取的货币
    3. 状态只能按 ALLOWED_TRANSITIONS 单调推进
    4. refund_status=processing 同一时刻只属于一个调用方（由条件更新保证）
    """

    id: Optional[int]
    user_id: int
    provider: PaymentProvider
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    currency: str = Currency.RUB.value

    provider_payment_id: Optional[str] = None
    original_currency: Currency = Currency.RUB
    original_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    rate_locked_at: Optional[datetime] = None
    rate_expires_at: Optional[datetime] = None

    # 套餐信息（对本核心不透明）
    tier_id: Optional[str] = None
    photo_count: Optional[int] = None
    avatar_id: Optional[int] = None

    # 渠道关联字段
    tbank_payment_id: Optional[str] = None
    telegram_charge_id: Optional[str] = None
    stars_amount: Optional[int] = None
    ton_tx_hash: Optional[str] = None
    ton_amount: Optional[Decimal] = None
    ton_sender_address: Optional[str] = None
    ton_confirmations: int = 0

    # 退款相关
    refund_amount: Optional[Decimal] = None
    refund_status: RefundStatus = RefundStatus.NONE
    refund_reason: Optional[str] = None
    refund_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount is None or self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be positive: {self.amount}",
                field="amount",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.rate_locked_at = _ensure_utc(self.rate_locked_at)
        self.rate_expires_at = _ensure_utc(self.rate_expires_at)
        self.refund_at = _ensure_utc(self.refund_at)

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return can_transition(self.status, target)

    def is_final_status(self) -> bool:
        return not ALLOWED_TRANSITIONS.get(self.status)

    def is_rate_expired(self, now: datetime) -> bool:
        return self.rate_expires_at is not None and self.rate_expires_at < _ensure_utc(now)

    def is_refundable(self) -> bool:
        """与退款锁的 WHERE 条件保持一致"""
        return (
            self.status == PaymentStatus.SUCCEEDED
            and self.refund_status not in (RefundStatus.PROCESSING, RefundStatus.COMPLETED)
        )


@dataclass(frozen=True)
class ExchangeRate:
    """汇率快照：写入后不可变，后续抓取只追加新行"""

    from_currency: Currency
    to_currency: Currency
    rate: Decimal
    source: RateSource
    fetched_at: datetime
    expires_at: Optional[datetime]
    id: Optional[int] = None
    raw_response: Optional[dict] = None


@dataclass(frozen=True)
class RateConversion:
    original_amount: Decimal
    original_currency: Currency
    converted_amount: Decimal
    converted_currency: Currency
    rate: Decimal
    rate_locked_at: datetime
    rate_expires_at: datetime


@dataclass
class OrphanPayment:
    """无法匹配到待支付记录的链上交易，留待人工对账"""

    tx_hash: str
    amount: Decimal
    wallet_address: Optional[str]
    comment: Optional[str] = None
    reason: Optional[str] = None
    status: str = "unmatched"
    matched_payment_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class RefundContext:
    """退款调度输入值对象（不持久化）"""

    payment: Payment
    reason: str
    admin_id: Optional[int] = None
    metadata: dict = field(default_factory=dict)
