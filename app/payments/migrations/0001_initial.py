import uuid

import django.db.models.deletion
import django_fsm
from django.db import migrations, models


TRANSACTION_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("processing", "Processing"),
    ("held", "Held"),
    ("complete", "Complete"),
    ("settled", "Settled"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
    ("refunded", "Refunded"),
    ("disputed", "Disputed"),
]

WALLET_KIND_CHOICES = [
    ("platform_escrow", "Platform Escrow"),
    ("platform_commission", "Platform Commission"),
    ("fleet", "Fleet"),
    ("driver", "Driver"),
    ("external_clearing", "External Clearing"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Wallet",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("kind", models.CharField(choices=WALLET_KIND_CHOICES, help_text="Category of this wallet", max_length=30)),
                ("owner_id", models.UUIDField(blank=True, db_index=True, help_text="Fleet or driver that owns this wallet (empty for platform wallets)", null=True)),
                ("currency", models.CharField(default="inr", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                ("balance_minor", models.BigIntegerField(default=0, help_text="Current balance in smallest currency unit; written only by ledger entries")),
                ("allow_negative", models.BooleanField(default=False, help_text="Whether this wallet may go negative (external clearing only)")),
                ("provider_account_ref", models.CharField(blank=True, help_text="Account identifier at the payment provider", max_length=255, null=True)),
                ("is_active", models.BooleanField(db_index=True, default=True, help_text="Inactive wallets reject new entries")),
            ],
            options={
                "ordering": ["kind", "created_at"],
                "indexes": [models.Index(fields=["kind", "currency"], name="payments_wa_kind_0c8f4e_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("kind", "owner_id", "currency"), name="unique_wallet_per_owner"),
                    models.UniqueConstraint(condition=models.Q(("owner_id__isnull", True)), fields=("kind", "currency"), name="unique_platform_wallet"),
                    models.CheckConstraint(check=models.Q(("balance_minor__gte", 0), ("allow_negative", True), _connector="OR"), name="wallet_balance_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FleetSubscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("fleet_id", models.UUIDField(db_index=True, help_text="Fleet operator being billed")),
                ("tier", models.CharField(choices=[("basic", "Basic"), ("premium", "Premium"), ("enterprise", "Enterprise")], default="basic", help_text="Subscription tier (also selects the commission rate)", max_length=20)),
                ("billing_cycle", models.CharField(choices=[("monthly", "Monthly"), ("quarterly", "Quarterly"), ("yearly", "Yearly")], default="monthly", help_text="Billing interval", max_length=20)),
                ("fee_minor", models.PositiveBigIntegerField(help_text="Fee per cycle in smallest currency unit (per vehicle for per-vehicle basis)")),
                ("currency", models.CharField(default="inr", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                ("fee_basis", models.CharField(choices=[("per_fleet", "Per Fleet"), ("per_vehicle", "Per Vehicle")], default="per_fleet", help_text="Whether the fee is charged per fleet or per vehicle", max_length=20)),
                ("vehicle_count", models.PositiveIntegerField(default=1, help_text="Vehicles billed when the fee basis is per vehicle")),
                ("status", django_fsm.FSMField(choices=[("active", "Active"), ("grace", "Grace Period"), ("suspended", "Suspended"), ("cancelled", "Cancelled"), ("expired", "Expired")], db_index=True, default="active", help_text="Current subscription state (managed by FSM)", max_length=50, protected=True)),
                ("current_period_start", models.DateTimeField(help_text="Start of the paid period")),
                ("current_period_end", models.DateTimeField(help_text="End of the paid period")),
                ("next_billing_date", models.DateTimeField(db_index=True, help_text="When the next renewal payment is due")),
                ("grace_period_end", models.DateTimeField(blank=True, help_text="Deadline for a successful payment before suspension", null=True)),
                ("auto_renew", models.BooleanField(default=True, help_text="Whether the scheduler bills this subscription at period end")),
                ("failed_payment_count", models.PositiveIntegerField(default=0, help_text="Consecutive failed renewal payments")),
                ("cancelled_at", models.DateTimeField(blank=True, help_text="When the subscription was cancelled", null=True)),
                ("cancellation_reason", models.TextField(blank=True, help_text="Reason given when cancelling", null=True)),
            ],
            options={
                "verbose_name": "Fleet Subscription",
                "verbose_name_plural": "Fleet Subscriptions",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status", "next_billing_date"], name="payments_fl_status_6a1d2b_idx")],
                "constraints": [
                    models.CheckConstraint(check=models.Q(("fee_minor__gt", 0)), name="subscription_fee_positive"),
                    models.UniqueConstraint(condition=models.Q(("status__in", ("active", "grace", "suspended"))), fields=("fleet_id",), name="unique_live_subscription_per_fleet"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("shipment_id", models.UUIDField(blank=True, db_index=True, help_text="Shipment this movement belongs to (empty for subscriptions)", null=True)),
                ("payer_id", models.UUIDField(blank=True, db_index=True, help_text="Shipper or fleet paying", null=True)),
                ("payee_id", models.UUIDField(blank=True, db_index=True, help_text="Fleet or driver receiving the settlement", null=True)),
                ("payee_wallet_kind", models.CharField(choices=[("fleet", "Fleet"), ("driver", "Driver")], default="fleet", help_text="Wallet kind settlements are paid into", max_length=30)),
                ("amount_minor", models.PositiveBigIntegerField(help_text="Amount in smallest currency unit (e.g., paise)")),
                ("currency", models.CharField(default="inr", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                ("kind", models.CharField(choices=[("escrow_in", "Escrow In"), ("escrow_out", "Escrow Out"), ("commission", "Commission"), ("subscription", "Subscription"), ("settlement", "Settlement"), ("refund", "Refund"), ("chargeback", "Chargeback"), ("dispute_hold", "Dispute Hold")], db_index=True, help_text="Kind of money movement", max_length=20)),
                ("status", django_fsm.FSMField(choices=TRANSACTION_STATUS_CHOICES, db_index=True, default="pending", help_text="Current lifecycle state (managed by FSM)", max_length=50, protected=True)),
                ("commission_rate", models.DecimalField(blank=True, decimal_places=2, help_text="Commission percentage applied when the escrow was created", max_digits=5, null=True)),
                ("provider_reference", models.CharField(blank=True, db_index=True, help_text="Transaction id returned by the payment gateway", max_length=255, null=True)),
                ("provider_response", models.JSONField(blank=True, default=dict, help_text="Last raw response received from the gateway")),
                ("processed_at", models.DateTimeField(blank=True, help_text="When the gateway accepted the movement", null=True)),
                ("settled_at", models.DateTimeField(blank=True, help_text="When the funds reached their final state", null=True)),
                ("failure_reason", models.TextField(blank=True, help_text="Why the movement failed", null=True)),
                ("refund_reason", models.TextField(blank=True, help_text="Reason recorded for refund legs", null=True)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Arbitrary JSON metadata for extensibility")),
                ("escrow_wallet", models.ForeignKey(blank=True, help_text="Platform escrow wallet holding the funds", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="escrow_transactions", to="payments.wallet")),
                ("related_transaction", models.ForeignKey(blank=True, help_text="Source transaction (escrow-in for settlements, refunds and reversals)", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="derived_transactions", to="payments.paymenttransaction")),
                ("subscription", models.ForeignKey(blank=True, help_text="Subscription billed by this transaction", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="payments.fleetsubscription")),
            ],
            options={
                "verbose_name": "Payment Transaction",
                "verbose_name_plural": "Payment Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["shipment_id", "kind"], name="payments_pa_shipmen_3e7b10_idx"),
                    models.Index(fields=["status", "updated_at"], name="payments_pa_status_9c42d1_idx"),
                    models.Index(fields=["kind", "status"], name="payments_pa_kind_5f0a87_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(check=models.Q(("amount_minor__gt", 0)), name="payment_transaction_amount_positive"),
                    models.UniqueConstraint(condition=models.Q(("kind", "escrow_in"), ("status__in", ("pending", "processing", "held", "disputed", "settled"))), fields=("shipment_id",), name="unique_live_escrow_in_per_shipment"),
                    models.UniqueConstraint(condition=models.Q(("kind", "settlement")), fields=("shipment_id",), name="unique_settlement_per_shipment"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RefundRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("shipment_id", models.UUIDField(db_index=True, help_text="Shipment the refund is requested for")),
                ("requester_id", models.UUIDField(help_text="Who asked for the refund")),
                ("request_type", models.CharField(choices=[("cancellation", "Cancellation"), ("dispute", "Dispute"), ("failed_delivery", "Failed Delivery"), ("admin_override", "Admin Override")], help_text="Why the refund was requested", max_length=20)),
                ("amount_requested_minor", models.PositiveBigIntegerField(help_text="Amount asked for in smallest currency unit")),
                ("reason", models.TextField(blank=True, default="", help_text="Requester's explanation")),
                ("evidence", models.JSONField(blank=True, default=dict, help_text="Supporting material (photos, documents, notes)")),
                ("status", django_fsm.FSMField(choices=[("pending", "Pending"), ("approved", "Approved"), ("rejected", "Rejected"), ("processing", "Processing"), ("completed", "Completed")], db_index=True, default="pending", help_text="Current request state (managed by FSM)", max_length=50, protected=True)),
                ("amount_approved_minor", models.PositiveBigIntegerField(blank=True, help_text="Amount granted by the approver", null=True)),
                ("approver_id", models.UUIDField(blank=True, help_text="Admin who approved or rejected the request", null=True)),
                ("approved_at", models.DateTimeField(blank=True, help_text="When the request was approved", null=True)),
                ("rejection_reason", models.TextField(blank=True, help_text="Approver's reason for rejecting", null=True)),
                ("processed_at", models.DateTimeField(blank=True, help_text="When the refund was paid out or the request closed", null=True)),
                ("refund_transaction", models.ForeignKey(blank=True, help_text="REFUND transaction that paid this request", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="+", to="payments.paymenttransaction")),
            ],
            options={
                "verbose_name": "Refund Request",
                "verbose_name_plural": "Refund Requests",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(check=models.Q(("amount_requested_minor__gt", 0)), name="refund_request_amount_positive"),
                    models.UniqueConstraint(condition=models.Q(("status__in", ("pending", "approved", "processing"))), fields=("shipment_id",), name="unique_open_refund_request_per_shipment"),
                ],
            },
        ),
        migrations.AddField(
            model_name="paymenttransaction",
            name="refund_request",
            field=models.ForeignKey(blank=True, help_text="Refund or dispute request this transaction belongs to", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="payments.refundrequest"),
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this entry was recorded")),
                ("amount_minor", models.PositiveBigIntegerField(help_text="Amount in smallest currency unit (always positive)")),
                ("currency", models.CharField(default="inr", help_text="ISO 4217 currency code", max_length=3)),
                ("entry_type", models.CharField(choices=[("escrow_funded", "Escrow Funded"), ("commission_collected", "Commission Collected"), ("settlement", "Settlement"), ("refund", "Refund"), ("reversal", "Reversal"), ("subscription_fee", "Subscription Fee"), ("adjustment", "Adjustment")], help_text="Category of this entry", max_length=30)),
                ("description", models.TextField(blank=True, help_text="Human-readable description of this entry", null=True)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Arbitrary JSON data for extensibility")),
                ("created_by", models.CharField(blank=True, help_text="Identifier of service/actor that created this entry", max_length=255, null=True)),
                ("idempotency_key", models.CharField(help_text="Unique key to prevent duplicate entries", max_length=255, unique=True)),
                ("credit_wallet", models.ForeignKey(help_text="Wallet money is added to", on_delete=django.db.models.deletion.PROTECT, related_name="credit_entries", to="payments.wallet")),
                ("debit_wallet", models.ForeignKey(help_text="Wallet money is taken from", on_delete=django.db.models.deletion.PROTECT, related_name="debit_entries", to="payments.wallet")),
                ("payment_transaction", models.ForeignKey(blank=True, help_text="Transaction whose status change produced this entry", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="ledger_entries", to="payments.paymenttransaction")),
            ],
            options={
                "verbose_name_plural": "ledger entries",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["entry_type"], name="payments_le_entry_t_4b9e23_idx")],
                "constraints": [
                    models.CheckConstraint(check=models.Q(("amount_minor__gt", 0)), name="ledger_entry_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="When the action was recorded")),
                ("payment_id", models.UUIDField(db_index=True, help_text="Entity the action was performed on")),
                ("entity_type", models.CharField(default="payment_transaction", help_text="Type of the entity acted on", max_length=50)),
                ("action", models.CharField(db_index=True, help_text="What happened", max_length=100)),
                ("actor_id", models.UUIDField(blank=True, help_text="Who performed the action", null=True)),
                ("actor_type", models.CharField(choices=[("user", "User"), ("admin", "Admin"), ("system", "System"), ("scheduler", "Scheduler")], default="system", help_text="Kind of actor", max_length=20)),
                ("old_values", models.JSONField(blank=True, help_text="Snapshot before the action", null=True)),
                ("new_values", models.JSONField(blank=True, help_text="Snapshot after the action", null=True)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Additional context")),
            ],
            options={
                "verbose_name": "Audit Entry",
                "verbose_name_plural": "Audit Entries",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["payment_id", "created_at"], name="payments_au_payment_7d3c56_idx")],
            },
        ),
        migrations.CreateModel(
            name="PaymentConfig",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("key", models.CharField(help_text="Dotted configuration key", max_length=100, unique=True)),
                ("value", models.JSONField(help_text="Configuration value (any JSON type)")),
                ("category", models.CharField(choices=[("COMMISSION", "Commission"), ("ESCROW", "Escrow"), ("SUBSCRIPTION", "Subscription"), ("REFUND", "Refund"), ("DISPUTE", "Dispute"), ("GATEWAY", "Gateway")], db_index=True, help_text="Engine area this key configures", max_length=20)),
                ("description", models.TextField(blank=True, default="", help_text="What this key controls")),
                ("updated_by", models.UUIDField(blank=True, help_text="Actor that last changed the value", null=True)),
                ("is_active", models.BooleanField(default=True, help_text="Inactive keys are ignored and compiled defaults apply")),
            ],
            options={
                "verbose_name": "Payment Config",
                "verbose_name_plural": "Payment Config",
                "ordering": ["category", "key"],
            },
        ),
        migrations.CreateModel(
            name="DeliveryConfirmation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("shipment_id", models.UUIDField(help_text="Delivered shipment", unique=True)),
                ("confirmed_at", models.DateTimeField(help_text="When the shipment was delivered")),
                ("proof_reference", models.CharField(blank=True, default="", help_text="Reference to the proof-of-delivery artefact", max_length=255)),
                ("confirmed_by", models.UUIDField(blank=True, help_text="Actor that recorded the confirmation", null=True)),
            ],
            options={
                "verbose_name": "Delivery Confirmation",
                "verbose_name_plural": "Delivery Confirmations",
                "ordering": ["-confirmed_at"],
            },
        ),
    ]
