"""
支付领域服务 - 与存储/网络无关的纯业务规则

职责：
1. 渠道状态映射
2. 部分退款金额计算
3. 链上支付的备注生成/解析、金额容差与确认数判断
4. 人工退款说明的生成
"""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL

from .entity import Payment, PaymentStatus
from domain.common.exceptions import DomainValidationException

RUB_MINOR_UNIT = Decimal("0.01")

# T-Bank 最小可退金额 1 RUB
MIN_PARTIAL_REFUND = Decimal("1")


def map_provider_status(provider: str, raw_status: Optional[str]) -> PaymentStatus:
    """渠道状态 → 内部状态；未登记的状态一律视为 pending"""
    mapping = PROVIDER_STATUS_TO_INTERNAL.get(provider, {})
    return PaymentStatus(mapping.get((raw_status or "").upper(), PaymentStatus.PENDING.value))


def round_settlement(amount: Decimal) -> Decimal:
    """按结算货币最小单位（分）四舍五入"""
    return Decimal(amount).quantize(RUB_MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """RUB → kopeks"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_partial_refund(amount: Decimal, failed_units: int, total_units: int) -> Decimal:
    """
    部分退款金额 = round(amount × failed / total)，取整到整卢布

    例：999 × 5/15 = 333；499 × 1/23 = 22
    """
    if total_units <= 0:
        raise DomainValidationException("total_units must be positive", field="total_units")
    if failed_units < 0 or failed_units > total_units:
        raise DomainValidationException(
            f"failed_units must be within 0..{total_units}",
            field="failed_units",
        )
    raw = Decimal(amount) * Decimal(failed_units) / Decimal(total_units)
    return raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def build_ton_comment(payment_id: int, prefix: str = "PG") -> str:
    return f"{prefix}{payment_id}"


def parse_ton_comment(comment: Optional[str], prefix: str = "PG") -> Optional[int]:
    """从交易备注中解析支付ID；无法解析返回 None"""
    if not comment:
        return None
    match = re.search(rf"{re.escape(prefix)}(\d+)", comment)
    if not match:
        return None
    return int(match.group(1))


def amount_within_tolerance(received: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
    """|received - expected| / expected <= tolerance"""
    expected = Decimal(expected)
    if expected <= 0:
        return False
    return abs(Decimal(received) - expected) / expected <= Decimal(tolerance)


def ton_status_for_confirmations(confirmations: int, required: int) -> PaymentStatus:
    return PaymentStatus.SUCCEEDED if confirmations >= required else PaymentStatus.PROCESSING


def ton_manual_refund_instructions(payment: Payment, amount: Optional[Decimal] = None) -> str:
    """
    TON 退款只能人工完成，说明中必须包含金额与原交易哈希

    amount 缺省时退全部 ton_amount
    """
    ton_amount = amount if amount is not None else payment.ton_amount
    if payment.ton_sender_address:
        return (
            f"Send {ton_amount} TON to {payment.ton_sender_address}. "
            f"TX hash: {payment.ton_tx_hash}"
        )
    return (
        f"TON refund required ({ton_amount} TON). Original TX: {payment.ton_tx_hash}. "
        "User wallet unknown - contact user."
    )
