"""create_payment_tables

Revision ID: 3c1f7a9d52e4
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1f7a9d52e4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('provider', sa.String(length=20), nullable=False, server_default='tbank', comment='支付渠道: tbank/stars/ton'),
        sa.Column('provider_payment_id', sa.String(length=200), nullable=True, comment='渠道分配的外部ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='结算金额(RUB)'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='RUB', comment='结算货币'),
        sa.Column('original_amount', sa.Numeric(precision=20, scale=9), nullable=True, comment='实际收取金额'),
        sa.Column('original_currency', sa.String(length=3), nullable=False, server_default='RUB', comment='实际收取货币: RUB/XTR/TON'),
        sa.Column('exchange_rate', sa.Numeric(precision=20, scale=8), nullable=True, comment='锁定汇率'),
        sa.Column('rate_locked_at', sa.DateTime(timezone=True), nullable=True, comment='汇率锁定时间'),
        sa.Column('rate_expires_at', sa.DateTime(timezone=True), nullable=True, comment='汇率过期时间'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('tier_id', sa.String(length=20), nullable=True, comment='套餐ID'),
        sa.Column('photo_count', sa.Integer(), nullable=True, comment='照片数量'),
        sa.Column('avatar_id', sa.Integer(), nullable=True, comment='购买上下文(头像ID)'),
        sa.Column('tbank_payment_id', sa.String(length=100), nullable=True, comment='T-Bank PaymentId'),
        sa.Column('telegram_charge_id', sa.String(length=200), nullable=True, comment='Telegram charge id'),
        sa.Column('stars_amount', sa.Integer(), nullable=True, comment='Stars 数量'),
        sa.Column('ton_tx_hash', sa.String(length=200), nullable=True, comment='TON 交易哈希'),
        sa.Column('ton_amount', sa.Numeric(precision=20, scale=9), nullable=True, comment='TON 数量'),
        sa.Column('ton_sender_address', sa.String(length=200), nullable=True, comment='TON 付款地址'),
        sa.Column('ton_confirmations', sa.Integer(), nullable=False, server_default='0', comment='链上确认数'),
        sa.Column('refund_amount', sa.Numeric(precision=15, scale=2), nullable=True, comment='退款金额'),
        sa.Column('refund_status', sa.String(length=20), nullable=False, server_default='none', comment='退款状态'),
        sa.Column('refund_reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('refund_at', sa.DateTime(timezone=True), nullable=True, comment='退款时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('telegram_charge_id', name='uq_payments_telegram_charge_id'),
        sa.UniqueConstraint('ton_tx_hash', name='uq_payments_ton_tx_hash'),
        comment='支付记录（永久审计轨迹）'
    )
    op.create_index('ix_payments_id', 'payments', ['id'], unique=False)
    op.create_index('ix_payments_user_id', 'payments', ['user_id'], unique=False)
    op.create_index('ix_payments_provider', 'payments', ['provider'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_avatar_id', 'payments', ['avatar_id'], unique=False)
    op.create_index('ix_payments_tbank_payment_id', 'payments', ['tbank_payment_id'], unique=False)
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'], unique=False)
    op.create_index('ix_payments_provider_status', 'payments', ['provider', 'status'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)

    op.create_table(
        'exchange_rates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('from_currency', sa.String(length=3), nullable=False, comment='源货币'),
        sa.Column('to_currency', sa.String(length=3), nullable=False, comment='目标货币'),
        sa.Column('rate', sa.Numeric(precision=20, scale=8), nullable=False, comment='汇率'),
        sa.Column('source', sa.String(length=30), nullable=False, comment='来源: live/cached_fallback/emergency_fallback/manual/fixed'),
        sa.Column('fetched_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='抓取时间'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='过期时间'),
        sa.Column('raw_response', sa.JSON(), nullable=True, comment='原始响应'),
        sa.PrimaryKeyConstraint('id'),
        comment='汇率快照（只追加）'
    )
    op.create_index('ix_exchange_rates_id', 'exchange_rates', ['id'], unique=False)
    op.create_index('ix_exchange_rates_pair_fetched', 'exchange_rates', ['from_currency', 'to_currency', 'fetched_at'], unique=False)

    op.create_table(
        'orphan_payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tx_hash', sa.String(length=200), nullable=False, comment='交易哈希'),
        sa.Column('amount', sa.Numeric(precision=20, scale=9), nullable=False, comment='TON 数量'),
        sa.Column('wallet_address', sa.String(length=200), nullable=True, comment='付款地址'),
        sa.Column('comment', sa.Text(), nullable=True, comment='交易备注'),
        sa.Column('reason', sa.String(length=100), nullable=True, comment='未匹配原因'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='unmatched', comment='状态'),
        sa.Column('matched_payment_id', sa.Integer(), nullable=True, comment='人工匹配后的支付ID'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash', name='uq_orphan_payments_tx_hash'),
        comment='无法匹配的链上交易'
    )
    op.create_index('ix_orphan_payments_id', 'orphan_payments', ['id'], unique=False)

    op.create_table(
        'admin_settings',
        sa.Column('key', sa.String(length=100), nullable=False, comment='配置键'),
        sa.Column('value', sa.JSON(), nullable=False, comment='配置值'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('key'),
        comment='后台可变配置'
    )

    op.create_table(
        'user_identities',
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('telegram_user_id', sa.BigInteger(), nullable=True, comment='Telegram user id'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('user_id'),
        sa.UniqueConstraint('telegram_user_id', name='uq_user_identities_telegram_user_id'),
        comment='用户与 Telegram 身份的关联'
    )


def downgrade() -> None:
    op.drop_table('user_identities')
    op.drop_table('admin_settings')
    op.drop_index('ix_orphan_payments_id', table_name='orphan_payments')
    op.drop_table('orphan_payments')
    op.drop_index('ix_exchange_rates_pair_fetched', table_name='exchange_rates')
    op.drop_index('ix_exchange_rates_id', table_name='exchange_rates')
    op.drop_table('exchange_rates')
    for name in (
        'ix_payments_created_at',
        'ix_payments_provider_status',
        'ix_payments_user_status',
        'ix_payments_tbank_payment_id',
        'ix_payments_avatar_id',
        'ix_payments_status',
        'ix_payments_provider',
        'ix_payments_user_id',
        'ix_payments_id',
    ):
        op.drop_index(name, table_name='payments')
    op.drop_table('payments')
