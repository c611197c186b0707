"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    BigInteger, Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index,
)

from .base import Base, utcnow


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")

    # 支付渠道信息
    provider = Column(String(20), nullable=False, default="tbank", index=True, comment="支付渠道: tbank/stars/ton")
    provider_payment_id = Column(String(200), nullable=True, comment="渠道分配的外部ID")

    # 金额信息（amount 始终为 RUB）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="结算金额(RUB)")
    currency = Column(String(3), nullable=False, default="RUB", comment="结算货币")
    original_amount = Column(Numeric(precision=20, scale=9), nullable=True, comment="实际收取金额")
    original_currency = Column(String(3), nullable=False, default="RUB", comment="实际收取货币: RUB/XTR/TON")
    exchange_rate = Column(Numeric(precision=20, scale=8), nullable=True, comment="锁定汇率")
    rate_locked_at = Column(DateTime(timezone=True), nullable=True, comment="汇率锁定时间")
    rate_expires_at = Column(DateTime(timezone=True), nullable=True, comment="汇率过期时间")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/processing/succeeded/canceled/refunded/refunding/expired/partial"
    )

    # 套餐
    tier_id = Column(String(20), nullable=True, comment="套餐ID")
    photo_count = Column(Integer, nullable=True, comment="照片数量")
    avatar_id = Column(Integer, nullable=True, index=True, comment="购买上下文(头像ID)")

    # 渠道关联字段
    tbank_payment_id = Column(String(100), nullable=True, index=True, comment="T-Bank PaymentId")
    telegram_charge_id = Column(String(200), nullable=True, unique=True, comment="Telegram charge id")
    stars_amount = Column(Integer, nullable=True, comment="Stars 数量")
    ton_tx_hash = Column(String(200), nullable=True, unique=True, comment="TON 交易哈希")
    ton_amount = Column(Numeric(precision=20, scale=9), nullable=True, comment="TON 数量")
    ton_sender_address = Column(String(200), nullable=True, comment="TON 付款地址")
    ton_confirmations = Column(Integer, nullable=False, default=0, comment="链上确认数")

    # 退款信息
    refund_amount = Column(Numeric(precision=15, scale=2), nullable=True, comment="退款金额")
    refund_status = Column(
        String(20),
        nullable=False,
        default="none",
        comment="退款状态: none/pending/processing/completed/failed/partial"
    )
    refund_reason = Column(Text, nullable=True, comment="退款原因")
    refund_at = Column(DateTime(timezone=True), nullable=True, comment="退款时间")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="更新时间")

    # 索引
    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_provider_status", "provider", "status"),
        Index("ix_payments_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, provider='{self.provider}', "
            f"amount={self.amount}, status='{self.status}', refund_status='{self.refund_status}')>"
        )


class ExchangeRateModel(Base):
    """汇率快照表（只追加）"""
    __tablename__ = "exchange_rates"

    id = Column(Integer, primary_key=True, index=True)
    from_currency = Column(String(3), nullable=False, comment="源货币")
    to_currency = Column(String(3), nullable=False, comment="目标货币")
    rate = Column(Numeric(precision=20, scale=8), nullable=False, comment="汇率")
    source = Column(String(30), nullable=False, comment="来源: live/cached_fallback/emergency_fallback/manual/fixed")
    fetched_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="抓取时间")
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="过期时间")
    raw_response = Column(JSON, nullable=True, comment="原始响应")

    __table_args__ = (
        Index("ix_exchange_rates_pair_fetched", "from_currency", "to_currency", "fetched_at"),
    )


class OrphanPaymentModel(Base):
    """无法匹配的链上交易"""
    __tablename__ = "orphan_payments"

    id = Column(Integer, primary_key=True, index=True)
    tx_hash = Column(String(200), nullable=False, unique=True, comment="交易哈希")
    amount = Column(Numeric(precision=20, scale=9), nullable=False, comment="TON 数量")
    wallet_address = Column(String(200), nullable=True, comment="付款地址")
    comment = Column(Text, nullable=True, comment="交易备注")
    reason = Column(String(100), nullable=True, comment="未匹配原因")
    status = Column(String(20), nullable=False, default="unmatched", comment="状态: unmatched/matched/refunded")
    matched_payment_id = Column(Integer, nullable=True, comment="人工匹配后的支付ID")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")


class AdminSettingModel(Base):
    """后台可变配置（JSON 值）"""
    __tablename__ = "admin_settings"

    key = Column(String(100), primary_key=True, comment="配置键")
    value = Column(JSON, nullable=False, comment="配置值")
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="更新时间")


class UserIdentityModel(Base):
    """用户与 Telegram 身份的关联"""
    __tablename__ = "user_identities"

    user_id = Column(Integer, primary_key=True, comment="用户ID")
    telegram_user_id = Column(BigInteger, nullable=True, unique=True, comment="Telegram user id")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
