"""Create tenant, ledger, reward, campaign and communication tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Values are the Python enum member names, which is what SQLAlchemy persists.
ENUM_TYPES = {
    "ledger_transaction_type": ("EARN", "REDEEM", "EXPIRE", "ADJUST"),
    "reward_coupon_type": ("UNIQUE", "GENERIC"),
    "reward_allocation_status": ("ISSUED", "FAILED", "REDEEMED"),
    "communication_channel": ("EMAIL", "SMS", "WHATSAPP"),
    "communication_status": ("PENDING", "SENT", "DELIVERED", "FAILED", "CLICKED"),
    "campaign_rule_type": (
        "ORDER_VALUE",
        "ORDER_COUNT",
        "SIGNUP",
        "BIRTHDAY",
        "REFERRAL",
        "CUSTOM_EVENT",
        "SOCIAL_FOLLOW",
        "PROFILE_COMPLETE",
        "REVIEW",
    ),
    "campaign_cooldown_basis": ("LAST_ENROLLMENT", "WINDOW_START"),
    "campaign_enrollment_status": ("ENROLLED", "CANCELLED"),
    "rule_evaluation_outcome": ("AWARDED", "REJECTED", "SKIPPED", "DUPLICATE", "FAILED"),
}


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _fk(target: str, ondelete: str = "CASCADE") -> sa.ForeignKey:
    return sa.ForeignKey(target, ondelete=ondelete)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    for type_name, values in ENUM_TYPES.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"""
            DO $$ BEGIN
                IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{type_name}') THEN
                    CREATE TYPE {type_name} AS ENUM ({labels});
                END IF;
            END $$;
        """)

    op.create_table(
        "clients",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("support_contact", sa.String(), nullable=True),
        sa.Column("communication_settings", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        _created_at(),
    )

    op.create_table(
        "members",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("referral_code", sa.String(), nullable=True, unique=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_points_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attributes", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("client_id", "external_id", name="uq_members_client_external_id"),
    )
    op.create_index("ix_members_client_id", "members", ["client_id"])
    op.create_index("ix_members_email", "members", ["email"])

    op.create_table(
        "membership_programs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_membership_programs_client_id", "membership_programs", ["client_id"])

    op.create_table(
        "loyalty_tiers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earn_rate", sa.Numeric(10, 4), nullable=False, server_default="1"),
        sa.Column("points_earn_divisor", sa.Numeric(10, 4), nullable=False, server_default="1"),
        sa.Column("max_redemption_percent", sa.Integer(), nullable=True),
        sa.Column("max_redemption_points", sa.Integer(), nullable=True),
        sa.Column("points_value", sa.Numeric(12, 4), nullable=False, server_default="0.01"),
        sa.Column("benefits", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("client_id", "name", name="uq_loyalty_tiers_client_name"),
    )
    op.create_index("ix_loyalty_tiers_client_id", "loyalty_tiers", ["client_id"])

    op.create_table(
        "message_templates",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("channel", _enum("communication_channel"), nullable=False),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_message_templates_client_id", "message_templates", ["client_id"])

    op.create_table(
        "rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("coupon_type", _enum("reward_coupon_type"), nullable=False),
        sa.Column("generic_coupon_code", sa.String(), nullable=True),
        sa.Column("redemption_link", sa.String(), nullable=True),
        sa.Column("validity_days", sa.Integer(), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_rewards_client_id", "rewards", ["client_id"])

    op.create_table(
        "reward_vouchers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("reward_id", _uuid(), _fk("rewards.id"), nullable=False),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("issued_to_member_id", _uuid(), _fk("members.id", "SET NULL"), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_reward_vouchers_available",
        "reward_vouchers",
        ["reward_id", "is_used", "issued_to_member_id"],
    )

    op.create_table(
        "campaign_rules",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("program_id", _uuid(), _fk("membership_programs.id", "SET NULL"), nullable=True),
        sa.Column("reward_id", _uuid(), _fk("rewards.id", "SET NULL"), nullable=True),
        sa.Column("template_id", _uuid(), _fk("message_templates.id", "SET NULL"), nullable=True),
        sa.Column("channel", _enum("communication_channel"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rule_type", _enum("campaign_rule_type"), nullable=False),
        sa.Column("trigger_conditions", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("points_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_expiry_days", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_times_per_customer", sa.Integer(), nullable=True),
        sa.Column("cooldown_days", sa.Integer(), nullable=True),
        sa.Column(
            "cooldown_basis",
            _enum("campaign_cooldown_basis"),
            nullable=False,
            server_default="LAST_ENROLLMENT",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_enrollments", sa.Integer(), nullable=True),
        sa.Column("current_enrollments", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_campaign_rules_client_active", "campaign_rules", ["client_id", "is_active"])

    op.create_table(
        "campaign_enrollments",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("member_id", _uuid(), _fk("members.id"), nullable=False),
        sa.Column("rule_id", _uuid(), _fk("campaign_rules.id"), nullable=False),
        sa.Column("program_id", _uuid(), _fk("membership_programs.id", "SET NULL"), nullable=True),
        sa.Column("reward_id", _uuid(), _fk("rewards.id", "SET NULL"), nullable=True),
        sa.Column("referrer_member_id", _uuid(), _fk("members.id", "SET NULL"), nullable=True),
        sa.Column("referred_member_id", _uuid(), _fk("members.id", "SET NULL"), nullable=True),
        sa.Column("status", _enum("campaign_enrollment_status"), nullable=False, server_default="ENROLLED"),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "member_id",
            "rule_id",
            "idempotency_key",
            name="uq_campaign_enrollments_idempotency",
        ),
    )
    op.create_index(
        "ix_campaign_enrollments_rule_member",
        "campaign_enrollments",
        ["rule_id", "member_id", "created_at"],
    )

    op.create_table(
        "reward_allocations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("member_id", _uuid(), _fk("members.id"), nullable=False),
        sa.Column("reward_id", _uuid(), _fk("rewards.id"), nullable=False),
        sa.Column("rule_id", _uuid(), _fk("campaign_rules.id", "SET NULL"), nullable=True),
        sa.Column("enrollment_id", _uuid(), _fk("campaign_enrollments.id", "SET NULL"), nullable=True),
        sa.Column("voucher_id", _uuid(), _fk("reward_vouchers.id", "SET NULL"), nullable=True),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("redemption_link", sa.String(), nullable=True),
        sa.Column("status", _enum("reward_allocation_status"), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("reward_id", "idempotency_key", name="uq_reward_allocations_idempotency"),
    )
    op.create_index("ix_reward_allocations_client_id", "reward_allocations", ["client_id"])
    op.create_index("ix_reward_allocations_member_id", "reward_allocations", ["member_id"])

    op.create_table(
        "ledger_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("member_id", _uuid(), _fk("members.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("transaction_type", _enum("ledger_transaction_type"), nullable=False),
        sa.Column("points_amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("member_id", "reference_id", name="uq_ledger_transactions_member_reference"),
        sa.UniqueConstraint("member_id", "sequence", name="uq_ledger_transactions_member_sequence"),
    )
    op.create_index("ix_ledger_transactions_client_id", "ledger_transactions", ["client_id"])

    op.create_table(
        "ledger_expiry_lots",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("member_id", _uuid(), _fk("members.id"), nullable=False),
        sa.Column("source_transaction_id", _uuid(), _fk("ledger_transactions.id"), nullable=False),
        sa.Column("earned_sequence", sa.Integer(), nullable=False),
        sa.Column("points_amount", sa.Integer(), nullable=False),
        sa.Column("consumed_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_ledger_expiry_lots_due", "ledger_expiry_lots", ["expired", "expires_at"])
    op.create_index(
        "ix_ledger_expiry_lots_member_fifo",
        "ledger_expiry_lots",
        ["member_id", "expires_at", "earned_sequence"],
    )

    op.create_table(
        "ledger_lot_consumptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("transaction_id", _uuid(), _fk("ledger_transactions.id"), nullable=False),
        sa.Column("lot_id", _uuid(), _fk("ledger_expiry_lots.id"), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_ledger_lot_consumptions_transaction_id", "ledger_lot_consumptions", ["transaction_id"])
    op.create_index("ix_ledger_lot_consumptions_lot_id", "ledger_lot_consumptions", ["lot_id"])

    op.create_table(
        "communication_records",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("member_id", _uuid(), _fk("members.id"), nullable=False),
        sa.Column("rule_id", _uuid(), _fk("campaign_rules.id", "SET NULL"), nullable=True),
        sa.Column("enrollment_id", _uuid(), _fk("campaign_enrollments.id", "SET NULL"), nullable=True),
        sa.Column("allocation_id", _uuid(), _fk("reward_allocations.id", "SET NULL"), nullable=True),
        sa.Column("template_id", _uuid(), _fk("message_templates.id", "SET NULL"), nullable=True),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("channel", _enum("communication_channel"), nullable=False),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("template_subject", sa.String(), nullable=True),
        sa.Column("template_body", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("personalized_url", sa.String(), nullable=True),
        sa.Column("fallback_render", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", _enum("communication_status"), nullable=False, server_default="PENDING"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(), nullable=True),
        sa.Column("provider_response", sa.JSON(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("client_id", "dedupe_key", name="uq_communication_records_dedupe"),
    )
    op.create_index("ix_communication_records_client_id", "communication_records", ["client_id"])
    op.create_index("ix_communication_records_member_id", "communication_records", ["member_id"])
    op.create_index(
        "ix_communication_records_provider_message_id",
        "communication_records",
        ["provider_message_id"],
    )
    op.create_index("ix_communication_records_dispatch", "communication_records", ["status", "next_attempt_at"])

    op.create_table(
        "rule_evaluations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", _uuid(), _fk("clients.id"), nullable=False),
        sa.Column("rule_id", _uuid(), _fk("campaign_rules.id"), nullable=False),
        sa.Column("member_id", _uuid(), _fk("members.id", "SET NULL"), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=False),
        sa.Column("outcome", _enum("rule_evaluation_outcome"), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_rule_evaluations_client_id", "rule_evaluations", ["client_id"])
    op.create_index("ix_rule_evaluations_rule_reference", "rule_evaluations", ["rule_id", "reference_id"])


def downgrade() -> None:
    op.drop_table("rule_evaluations")
    op.drop_table("communication_records")
    op.drop_table("ledger_lot_consumptions")
    op.drop_table("ledger_expiry_lots")
    op.drop_table("ledger_transactions")
    op.drop_table("reward_allocations")
    op.drop_table("campaign_enrollments")
    op.drop_table("campaign_rules")
    op.drop_table("reward_vouchers")
    op.drop_table("rewards")
    op.drop_table("message_templates")
    op.drop_table("loyalty_tiers")
    op.drop_table("membership_programs")
    op.drop_table("members")
    op.drop_table("clients")
    for type_name in reversed(list(ENUM_TYPES)):
        op.execute(f"DROP TYPE IF EXISTS {type_name}")
