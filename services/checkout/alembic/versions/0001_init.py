from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'checkouts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(40), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('user_details', sa.JSON, nullable=False),
        sa.Column('payment_type', sa.String(30), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False),
        sa.Column('payment_reference', sa.String(64), nullable=True),
        sa.Column('payment_details', sa.JSON, nullable=True),
        sa.Column('delivery_status', sa.String(30), nullable=False),
        sa.Column('estimated_delivery_date', sa.DateTime, nullable=False),
        sa.Column('actual_delivery_date', sa.DateTime, nullable=True),
        sa.Column('cancellation_deadline', sa.DateTime, nullable=False),
        sa.Column('delivery_agent', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
        sa.UniqueConstraint('payment_reference', name='uq_checkouts_payment_reference'),
    )
    op.create_index('ix_checkouts_order_number', 'checkouts', ['order_number'], unique=True)
    op.create_index('ix_checkouts_user_id', 'checkouts', ['user_id'])
    op.create_index('ix_checkouts_payment_status', 'checkouts', ['payment_status'])
    op.create_index('ix_checkouts_delivery_status', 'checkouts', ['delivery_status'])
    op.create_index('ix_checkouts_created_at', 'checkouts', ['created_at'])

    op.create_table(
        'checkout_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('checkout_id', sa.Integer, sa.ForeignKey('checkouts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('size', sa.String(40), nullable=False),
        sa.Column('color', sa.String(40), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('product_name', sa.String(200), nullable=True),
        sa.Column('product_snapshot', sa.JSON, nullable=True),
    )
    op.create_index('ix_checkout_items_checkout_id', 'checkout_items', ['checkout_id'])

    op.create_table(
        'checkout_status_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('checkout_id', sa.Integer, sa.ForeignKey('checkouts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('changed_at', sa.DateTime, nullable=False),
        sa.Column('note', sa.Text, nullable=True),
    )
    op.create_index('ix_checkout_status_events_checkout_id', 'checkout_status_events', ['checkout_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('data', sa.JSON, nullable=True),
        sa.Column('read', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_notifications_type', 'notifications', ['type'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])

def downgrade():
    op.drop_table('notifications')
    op.drop_table('checkout_status_events')
    op.drop_table('checkout_items')
    op.drop_table('checkouts')
