"""academies, billing, notification queue and audit tables

Revision ID: 0001_initial
Revises:
Create Date: 2024-03-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False, primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "academies",
        *_base_columns(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("quiet_hours_start", sa.String(length=5), nullable=True),
        sa.Column("quiet_hours_end", sa.String(length=5), nullable=True),
    )
    op.create_index("ix_academies_name", "academies", ["name"])
    op.create_index("ix_academies_slug", "academies", ["slug"], unique=True)

    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_users_academy"),
    )
    op.create_index("ix_users_academy_id", "users", ["academy_id"])
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "tuition_plans",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_day", sa.Integer(), nullable=False),
        sa.Column("grace_days", sa.Integer(), nullable=False),
        sa.Column("late_fee", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_tuition_plans_academy"),
    )
    op.create_index("ix_tuition_plans_academy_id", "tuition_plans", ["academy_id"])

    op.create_table(
        "student_subscriptions",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("student_user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("plan_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_billing_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_subscriptions_academy"),
        sa.ForeignKeyConstraint(["student_user_id"], ["users.id"], name="fk_subscriptions_student"),
        sa.ForeignKeyConstraint(["plan_id"], ["tuition_plans.id"], name="fk_subscriptions_plan"),
    )
    op.create_index("ix_student_subscriptions_academy_id", "student_subscriptions", ["academy_id"])
    op.create_index("ix_student_subscriptions_student_user_id", "student_subscriptions", ["student_user_id"])
    op.create_index("ix_student_subscriptions_plan_id", "student_subscriptions", ["plan_id"])
    op.create_index("ix_student_subscriptions_status", "student_subscriptions", ["status"])

    op.create_table(
        "invoices",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("student_user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("plan_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("provider_payment_key", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_invoices_academy"),
        sa.ForeignKeyConstraint(["student_user_id"], ["users.id"], name="fk_invoices_student"),
        sa.ForeignKeyConstraint(["subscription_id"], ["student_subscriptions.id"], name="fk_invoices_subscription"),
        sa.ForeignKeyConstraint(["plan_id"], ["tuition_plans.id"], name="fk_invoices_plan"),
    )
    op.create_index("ix_invoices_academy_id", "invoices", ["academy_id"])
    op.create_index("ix_invoices_student_user_id", "invoices", ["student_user_id"])
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])
    op.create_index("ix_invoices_due_date", "invoices", ["due_date"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    op.create_index("ix_invoices_order_id", "invoices", ["order_id"], unique=True)
    op.create_index("ix_invoices_provider_payment_key", "invoices", ["provider_payment_key"])

    op.create_table(
        "payment_attempts",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("invoice_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("provider_transaction_id", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_payment_attempts_academy"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], name="fk_payment_attempts_invoice"),
        sa.UniqueConstraint("invoice_id", "attempt_no", name="uq_payment_attempts_invoice_attempt"),
    )
    op.create_index("ix_payment_attempts_academy_id", "payment_attempts", ["academy_id"])
    op.create_index("ix_payment_attempts_invoice_id", "payment_attempts", ["invoice_id"])

    op.create_table(
        "payment_methods",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("student_user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("customer_key", sa.String(), nullable=False),
        sa.Column("billing_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("card_brand", sa.String(), nullable=True),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_payment_methods_academy"),
        sa.ForeignKeyConstraint(["student_user_id"], ["users.id"], name="fk_payment_methods_student"),
    )
    op.create_index("ix_payment_methods_academy_id", "payment_methods", ["academy_id"])
    op.create_index("ix_payment_methods_student_user_id", "payment_methods", ["student_user_id"])
    op.create_index("ix_payment_methods_billing_key", "payment_methods", ["billing_key"])
    op.create_index("ix_payment_methods_status", "payment_methods", ["status"])

    op.create_table(
        "notification_queue",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("recipient_phone", sa.String(length=32), nullable=False),
        sa.Column("sender_key", sa.String(), nullable=False),
        sa.Column("template_code", sa.String(length=64), nullable=False),
        sa.Column("template_vars", sa.JSON(), nullable=True),
        sa.Column("dedup_key", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("provider_msg_key", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_notification_queue_academy"),
    )
    op.create_index("ix_notification_queue_academy_id", "notification_queue", ["academy_id"])
    op.create_index("ix_notification_queue_dedup_key", "notification_queue", ["dedup_key"])
    op.create_index("ix_notification_queue_status", "notification_queue", ["status"])
    op.create_index("ix_notification_queue_next_retry_at", "notification_queue", ["next_retry_at"])

    op.create_table(
        "audit_logs",
        *_base_columns(),
        sa.Column("academy_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("actor_user_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["academy_id"], ["academies.id"], name="fk_audit_logs_academy"),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], name="fk_audit_logs_actor"),
    )
    op.create_index("ix_audit_logs_academy_id", "audit_logs", ["academy_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])

    op.create_table(
        "webhook_events",
        *_base_columns(),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_status", sa.String(), nullable=False),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])


def downgrade() -> None:
    for table in (
        "webhook_events",
        "audit_logs",
        "notification_queue",
        "payment_methods",
        "payment_attempts",
        "invoices",
        "student_subscriptions",
        "tuition_plans",
        "users",
        "academies",
    ):
        op.drop_table(table)
