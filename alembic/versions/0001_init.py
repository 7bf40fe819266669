from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('financial_status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('fulfillment_status', sa.String(30), nullable=False, server_default='unfulfilled'),
        sa.Column('subtotal_price', MONEY, nullable=False),
        sa.Column('total_tax', MONEY, nullable=False, server_default='0'),
        sa.Column('total_shipping', MONEY, nullable=False, server_default='0'),
        sa.Column('total_discounts', MONEY, nullable=False, server_default='0'),
        sa.Column('total_price', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('customer_info', sa.JSON, nullable=True),
        sa.Column('billing_address', sa.JSON, nullable=True),
        sa.Column('shipping_address', sa.JSON, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('tags', sa.JSON, nullable=False),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('tracking_url', sa.String(500), nullable=True),
        sa.Column('carrier', sa.String(100), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('subtotal_price >= 0', name='ck_orders_subtotal_non_negative'),
        sa.CheckConstraint('total_tax >= 0', name='ck_orders_tax_non_negative'),
        sa.CheckConstraint('total_shipping >= 0', name='ck_orders_shipping_non_negative'),
        sa.CheckConstraint('total_discounts >= 0', name='ck_orders_discounts_non_negative'),
        sa.CheckConstraint('total_price >= 0', name='ck_orders_total_non_negative'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'order_line_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('variant_id', sa.String(64), nullable=True),
        sa.Column('sku', sa.String(50), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('total_price', MONEY, nullable=False),
        sa.Column('product_title', sa.String(255), nullable=True),
        sa.Column('variant_title', sa.String(255), nullable=True),
        sa.Column('properties', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('quantity > 0', name='ck_order_line_items_quantity_positive'),
        sa.CheckConstraint('price >= 0', name='ck_order_line_items_price_non_negative'),
    )
    op.create_index('ix_order_line_items_order_id', 'order_line_items', ['order_id'])

    op.create_table(
        'order_discounts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code', sa.String(50), nullable=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('value', MONEY, nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_order_discounts_order_id', 'order_discounts', ['order_id'])

    op.create_table(
        'order_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('actor_id', sa.String(64), nullable=True),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('previous_values', sa.JSON, nullable=True),
        sa.Column('new_values', sa.JSON, nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_order_events_order_id', 'order_events', ['order_id'])

    op.create_table(
        'shopping_carts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=True, unique=True),
        sa.Column('session_id', sa.String(128), nullable=True, unique=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'cart_line_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('cart_id', sa.Integer, sa.ForeignKey('shopping_carts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('variant_id', sa.String(64), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('properties', sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('cart_id', 'product_id', 'variant_id', name='uq_cart_line_items_product',
                            postgresql_nulls_not_distinct=True),
        sa.CheckConstraint('quantity > 0', name='ck_cart_line_items_quantity_positive'),
    )
    op.create_index('ix_cart_line_items_cart_id', 'cart_line_items', ['cart_id'])

    op.create_table(
        'payment_customers',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('provider_customer_id', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'provider', name='uq_payment_customers_user_provider'),
    )

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('last4', sa.String(4), nullable=True),
        sa.Column('brand', sa.String(30), nullable=True),
        sa.Column('expiry_month', sa.Integer, nullable=True),
        sa.Column('expiry_year', sa.Integer, nullable=True),
        sa.Column('provider_customer_id', sa.String(100), nullable=True),
        sa.Column('provider_payment_method_id', sa.String(100), nullable=True),
        sa.Column('billing_address', sa.JSON, nullable=True),
        sa.Column('is_default', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_payment_methods_user_id', 'payment_methods', ['user_id'])
    op.create_index(
        'uq_payment_methods_user_default', 'payment_methods', ['user_id'], unique=True,
        postgresql_where=sa.text('is_default AND is_active'),
        sqlite_where=sa.text('is_default = 1 AND is_active = 1'),
    )

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('payment_method_id', sa.Integer, sa.ForeignKey('payment_methods.id'), nullable=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('provider_transaction_id', sa.String(100), nullable=True),
        sa.Column('provider_customer_id', sa.String(100), nullable=True),
        sa.Column('payment_intent_id', sa.String(100), nullable=True, unique=True),
        sa.Column('client_secret', sa.String(255), nullable=True),
        sa.Column('failure_code', sa.String(100), nullable=True),
        sa.Column('failure_message', sa.Text, nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('parent_transaction_id', sa.Integer, sa.ForeignKey('payment_transactions.id'), nullable=True),
        sa.Column('webhook_received', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_payment_transactions_amount_positive'),
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])
    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'])
    op.create_index('ix_payment_transactions_provider_transaction_id', 'payment_transactions',
                    ['provider_transaction_id'])
    op.create_index('ix_payment_transactions_parent_transaction_id', 'payment_transactions',
                    ['parent_transaction_id'])

    op.create_table(
        'payment_webhooks',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer, nullable=False, server_default='3'),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('signature', sa.String(500), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('payment_method_id', sa.Integer, sa.ForeignKey('payment_methods.id'), nullable=True),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('provider_subscription_id', sa.String(100), nullable=False, unique=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('interval', sa.String(10), nullable=False, server_default='month'),
        sa.Column('interval_count', sa.Integer, nullable=False, server_default='1'),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])

    op.create_table(
        'subscription_invoices',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('subscription_id', sa.Integer, sa.ForeignKey('subscriptions.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('provider_invoice_id', sa.String(100), nullable=False, unique=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('amount_paid', MONEY, nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscription_invoices_subscription_id', 'subscription_invoices', ['subscription_id'])


def downgrade():
    op.drop_table('subscription_invoices')
    op.drop_table('subscriptions')
    op.drop_table('payment_webhooks')
    op.drop_table('payment_transactions')
    op.drop_table('payment_methods')
    op.drop_table('payment_customers')
    op.drop_table('cart_line_items')
    op.drop_table('shopping_carts')
    op.drop_table('order_events')
    op.drop_table('order_discounts')
    op.drop_table('order_line_items')
    op.drop_table('orders')
