"""payment_reconciliation_core

Revision ID: 0001_payment_reconciliation
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_payment_reconciliation'
down_revision = None
branch_labels = None
depends_on = None


REFERENCE_TABLES = ('restaurant_orders', 'snack_orders', 'chalet_bookings', 'pool_tickets')


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable, server_default=None if nullable else sa.func.now())


def upgrade() -> None:
    # Append-only ledger; webhook_id UNIQUE is the idempotency checkpoint
    op.create_table(
        'payment_ledger',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('reference_type', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.Text(), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('amount', sa.Text(), nullable=False),
        sa.Column('currency', sa.Text(), nullable=False),
        sa.Column('gateway_reference_id', sa.Text(), nullable=True),
        sa.Column('webhook_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('webhook_id', name='uq_payment_ledger_webhook_id'),
    )
    op.create_index('idx_payment_ledger_reference', 'payment_ledger', ['reference_type', 'reference_id'])
    op.create_index('idx_payment_ledger_gateway_ref', 'payment_ledger', ['gateway_reference_id'])

    # Storage-level immutability: UPDATE/DELETE rejected for every client
    op.execute(
        """
        CREATE OR REPLACE FUNCTION payment_ledger_forbid_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION USING
                MESSAGE = 'LEDGER_MUTATION_FORBIDDEN: payment_ledger is append-only (' || TG_OP || ')',
                ERRCODE = 'restrict_violation';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER payment_ledger_no_mutation
            BEFORE UPDATE OR DELETE ON payment_ledger
            FOR EACH ROW EXECUTE FUNCTION payment_ledger_forbid_mutation()
        """
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('reference_type', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.Text(), nullable=False),
        sa.Column('amount', sa.Text(), nullable=False),
        sa.Column('refunded_amount', sa.Text(), nullable=False, server_default='0.00'),
        sa.Column('currency', sa.Text(), nullable=False, server_default='EUR'),
        sa.Column('method', sa.Text(), nullable=False, server_default='card'),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('gateway_payment_id', sa.Text(), nullable=True),
        sa.Column('gateway_charge_id', sa.Text(), nullable=True),
        sa.Column('source_event_id', sa.Text(), nullable=True),
        _timestamp('processed_at', nullable=True),
        sa.Column('processed_by', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.UniqueConstraint('source_event_id', name='uq_payments_source_event'),
    )
    op.create_index('idx_payments_reference', 'payments', ['reference_type', 'reference_id'])
    op.create_index('idx_payments_gateway_payment', 'payments', ['gateway_payment_id'])

    # Reference tables are owned by the ordering/booking modules; created here
    # only if absent so fresh environments have the payment_status projection
    bind = op.get_bind()
    existing = set(sa.inspect(bind).get_table_names())
    for table in REFERENCE_TABLES:
        if table in existing:
            continue
        op.create_table(
            table,
            sa.Column('id', sa.Text(), primary_key=True),
            sa.Column('customer_id', sa.Text(), nullable=True),
            sa.Column('payment_status', sa.Text(), nullable=False, server_default='pending'),
            _timestamp('updated_at'),
        )

    op.create_table(
        'loyalty_accounts',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('tier', sa.Text(), nullable=False, server_default='bronze'),
        sa.Column('available_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_points', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.UniqueConstraint('user_id', name='uq_loyalty_accounts_user'),
    )

    op.create_table(
        'loyalty_transactions',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('account_id', sa.Text(), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.Text(), nullable=True),
        sa.Column('reference_id', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        _timestamp('expires_at', nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('type', 'reference_type', 'reference_id', name='uq_loyalty_tx_reference'),
    )
    op.create_index('idx_loyalty_tx_account', 'loyalty_transactions', ['account_id'])

    op.create_table(
        'side_effect_dead_letters',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('effect', sa.Text(), nullable=False),
        sa.Column('reference_type', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.Text(), nullable=False),
        sa.Column('amount', sa.Text(), nullable=False),
        sa.Column('webhook_id', sa.Text(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='5'),
        _timestamp('next_retry_at', nullable=True),
        _timestamp('resolved_at', nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('idx_dead_letters_status_next', 'side_effect_dead_letters', ['status', 'next_retry_at'])
    op.create_index('idx_dead_letters_reference', 'side_effect_dead_letters', ['reference_type', 'reference_id'])


def downgrade() -> None:
    op.drop_index('idx_dead_letters_reference', table_name='side_effect_dead_letters')
    op.drop_index('idx_dead_letters_status_next', table_name='side_effect_dead_letters')
    op.drop_table('side_effect_dead_letters')

    op.drop_index('idx_loyalty_tx_account', table_name='loyalty_transactions')
    op.drop_table('loyalty_transactions')
    op.drop_table('loyalty_accounts')

    # Reference tables are left in place (owned by other modules)

    op.drop_index('idx_payments_gateway_payment', table_name='payments')
    op.drop_index('idx_payments_reference', table_name='payments')
    op.drop_table('payments')

    op.execute("DROP TRIGGER IF EXISTS payment_ledger_no_mutation ON payment_ledger")
    op.execute("DROP FUNCTION IF EXISTS payment_ledger_forbid_mutation()")
    op.drop_index('idx_payment_ledger_gateway_ref', table_name='payment_ledger')
    op.drop_index('idx_payment_ledger_reference', table_name='payment_ledger')
    op.drop_table('payment_ledger')
