"""create_payment_and_subscription_tables

Revision ID: 3f2a9c41b7de
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2a9c41b7de'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Read models maintained by the catalog / user modules
    op.create_table(
        'plans',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False, comment='套餐名称'),
        sa.Column('slug', sa.String(length=100), nullable=True, comment='套餐标识'),
        sa.Column('monthly_price', sa.BigInteger(), nullable=False, comment='月价格（最小货币单位）'),
        sa.Column('annual_price', sa.BigInteger(), nullable=True, comment='年价格（最小货币单位）'),
        sa.Column('monthly_credits', sa.Integer(), nullable=False, server_default='0', comment='每期额度'),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False, server_default='monthly', comment='计费周期'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='BRL', comment='货币代码'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否上架'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
        if_not_exists=True,
    )
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=100), nullable=True, comment='邮箱'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否激活'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        if_not_exists=True,
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('plan_id', sa.String(length=64), nullable=True, comment='套餐ID'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='BRL', comment='货币代码 ISO-4217'),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=False, server_default='0', comment='已退款金额（含处理中）'),
        sa.Column('method', sa.String(length=32), nullable=False, comment='支付方式: stripe/paypal'),
        sa.Column('type', sa.String(length=32), nullable=False, server_default='one_time', comment='支付类型: one_time/subscription'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='支付状态: pending/completed/failed/cancelled/refunded'),
        sa.Column('external_reference', sa.String(length=200), nullable=True, comment='网关侧ID（PaymentIntent/Order）'),
        sa.Column('gateway_response', sa.JSON(), nullable=True, comment='最近一次网关响应快照'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.CheckConstraint('refunded_amount >= 0 AND refunded_amount <= amount', name='ck_payments_refunded_amount_range'),
        sa.CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        sa.PrimaryKeyConstraint('id'),
        comment='支付记录表（永不删除）'
    )
    op.create_index('ix_payments_owner_id', 'payments', ['owner_id'], unique=False)
    op.create_index('ix_payments_plan_id', 'payments', ['plan_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_owner_created', 'payments', ['owner_id', 'created_at'], unique=False)
    op.create_index('ix_payments_method_external_ref', 'payments', ['method', 'external_reference'], unique=False)

    op.create_table(
        'refunds',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('payment_id', sa.String(length=36), nullable=False, comment='关联的支付ID'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='退款金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='退款状态: pending/succeeded/failed'),
        sa.Column('reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('provider_refund_id', sa.String(length=200), nullable=True, comment='渠道退款ID'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        comment='退款明细表'
    )
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'], unique=False)
    op.create_index('ix_refunds_payment_status', 'refunds', ['payment_id', 'status'], unique=False)

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('plan_id', sa.String(length=64), nullable=False, comment='套餐ID'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='active', comment='订阅状态: pending/trial/active/cancelled/expired/suspended'),
        sa.Column('external_subscription_id', sa.String(length=200), nullable=True, comment='网关订阅ID'),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False, server_default='monthly', comment='计费周期: monthly/annual/weekly'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False, comment='开始时间'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False, comment='当前周期开始'),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False, comment='当前周期结束'),
        sa.Column('credits_granted', sa.Integer(), nullable=False, server_default='0', comment='发放额度'),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0', comment='已用额度'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否自动续费'),
        sa.Column('price_paid', sa.BigInteger(), nullable=True, comment='最近一次支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='BRL', comment='货币代码'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.Column('cancellation_reason', sa.Text(), nullable=True, comment='取消原因'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1', comment='版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='用户订阅表'
    )
    op.create_index('ix_user_subscriptions_owner_id', 'user_subscriptions', ['owner_id'], unique=False)
    op.create_index('ix_user_subscriptions_owner_status', 'user_subscriptions', ['owner_id', 'status'], unique=False)
    # At most one ACTIVE subscription per (owner, plan)
    op.create_index(
        'uq_user_subscriptions_active_owner_plan',
        'user_subscriptions',
        ['owner_id', 'plan_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'subscription_grants',
        sa.Column('payment_id', sa.String(length=36), nullable=False),
        sa.Column('subscription_id', sa.String(length=36), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False, comment='created/extended'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('payment_id'),
        comment='支付到订阅的授予台账'
    )
    op.create_index('ix_subscription_grants_subscription_id', 'subscription_grants', ['subscription_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_subscription_grants_subscription_id', table_name='subscription_grants')
    op.drop_table('subscription_grants')
    op.drop_index('uq_user_subscriptions_active_owner_plan', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_owner_status', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_owner_id', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
    op.drop_index('ix_refunds_payment_status', table_name='refunds')
    op.drop_index('ix_refunds_payment_id', table_name='refunds')
    op.drop_table('refunds')
    op.drop_index('ix_payments_method_external_ref', table_name='payments')
    op.drop_index('ix_payments_owner_created', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_plan_id', table_name='payments')
    op.drop_index('ix_payments_owner_id', table_name='payments')
    op.drop_table('payments')
    # plans / users belong to other modules and are left in place
