"""
Refund and dispute adjudication.

A RefundRequest is opened by a shipper (or an admin), approved or
rejected by an operator, and paid out through EscrowManager. Dispute
requests freeze a held escrow until they are resolved.

    create_refund_request -> PENDING
    approve_refund_request -> APPROVED -> PROCESSING -> COMPLETED
    reject_refund_request -> REJECTED

A gateway failure after approval leaves the request APPROVED; call
process_approved_refund to retry with the same refund transaction.
"""

from __future__ import annotations

import uuid

from django.db import IntegrityError, transaction

from core.services import BaseService

from payments.exceptions import (
    AmountExceedsAvailableError,
    DuplicateRequestError,
    InvalidAmountError,
    PaymentNotFoundError,
    StateConflictError,
)
from payments.locks import check_version
from payments.models import PaymentTransaction, RefundRequest
from payments.state_machines import (
    FUNDED_ESCROW_STATUSES,
    OPEN_REFUND_STATUSES,
    ActorType,
    RefundRequestStatus,
    RefundRequestType,
    TransactionKind,
    TransactionStatus,
)

from .audit import AuditLogger, snapshot
from .escrow import EscrowManager, resolve_actor_type

REQUEST_FIELDS = [
    "status",
    "amount_requested_minor",
    "amount_approved_minor",
    "approver_id",
    "rejection_reason",
    "refund_transaction",
]


class RefundManager(BaseService):
    """Creates, approves, rejects and pays out refund requests."""

    def __init__(self, escrow: EscrowManager, audit: AuditLogger | None = None) -> None:
        self.escrow = escrow
        self.audit = audit or escrow.audit
        self.logger = self.get_logger()

    @staticmethod
    def get_refund_request(request_id: uuid.UUID) -> RefundRequest:
        try:
            return RefundRequest.objects.get(pk=request_id)
        except RefundRequest.DoesNotExist:
            raise PaymentNotFoundError(
                f"Refund request {request_id} not found",
                details={"refund_request_id": str(request_id)},
            )

    @staticmethod
    def _locked(request_id: uuid.UUID, expected_version: int | None = None) -> RefundRequest:
        if expected_version is not None:
            return check_version(RefundRequest, request_id, expected_version)
        try:
            return RefundRequest.objects.select_for_update().get(pk=request_id)
        except RefundRequest.DoesNotExist:
            raise PaymentNotFoundError(
                f"Refund request {request_id} not found",
                details={"refund_request_id": str(request_id)},
            )

    def _audit(self, request: RefundRequest, action: str, actor_id, actor_type, before=None, metadata=None):
        self.audit.log(
            request.id,
            action,
            actor_id,
            actor_type,
            old_values=before,
            new_values=snapshot(request, REQUEST_FIELDS),
            metadata=metadata,
            entity_type="refund_request",
        )

    # =========================================================================
    # Create
    # =========================================================================

    def create_refund_request(
        self,
        shipment_id: uuid.UUID,
        requested_by: uuid.UUID,
        request_type: RefundRequestType | str,
        amount_minor: int,
        reason: str,
        evidence: dict | None = None,
        actor_type: str | None = None,
    ) -> RefundRequest:
        """
        Open a refund request against a shipment's funded escrow.

        Dispute requests also freeze a HELD escrow (see EscrowManager.open_dispute).

        Raises:
            InvalidAmountError: amount_minor not positive
            StateConflictError: Shipment has no funded escrow
            DuplicateRequestError: An open request already exists for the shipment
        """
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidAmountError(
                "Refund amount must be a positive integer in minor units",
                details={"amount_minor": amount_minor},
            )

        escrow_in = self.escrow.get_escrow_in(shipment_id)
        if escrow_in is None or escrow_in.status not in FUNDED_ESCROW_STATUSES:
            raise StateConflictError(
                f"No funded escrow for shipment {shipment_id}",
                details={
                    "shipment_id": str(shipment_id),
                    "current_state": escrow_in.status if escrow_in else None,
                },
            )

        if RefundRequest.objects.filter(
            shipment_id=shipment_id, status__in=OPEN_REFUND_STATUSES
        ).exists():
            raise DuplicateRequestError(
                "An open refund request already exists for this shipment",
                details={"shipment_id": str(shipment_id)},
            )

        try:
            with transaction.atomic():
                request = RefundRequest.objects.create(
                    shipment_id=shipment_id,
                    requester_id=requested_by,
                    request_type=request_type,
                    amount_requested_minor=amount_minor,
                    reason=reason,
                    evidence=evidence or {},
                )
        except IntegrityError:
            raise DuplicateRequestError(
                "An open refund request already exists for this shipment",
                details={"shipment_id": str(shipment_id)},
            )

        actor_type = resolve_actor_type(requested_by, actor_type)
        self._audit(
            request, "refund_request.created", requested_by, actor_type,
            metadata={"escrow_in_id": str(escrow_in.id)},
        )

        if request.is_dispute:
            marker = self.escrow.open_dispute(shipment_id, request, requested_by, actor_type)
            if marker is not None:
                self.logger.info(
                    "Dispute opened",
                    extra={"refund_request_id": str(request.id), "dispute_hold_id": str(marker.id)},
                )
        return request

    # =========================================================================
    # Approve / Process
    # =========================================================================

    def approve_refund_request(
        self,
        request_id: uuid.UUID,
        approver_id: uuid.UUID,
        approved_amount: int | None = None,
        expected_version: int | None = None,
        actor_type: str | None = None,
    ) -> RefundRequest:
        """
        Approve a pending request and pay it out.

        Raises:
            StateConflictError: Request is not PENDING
            InvalidAmountError: approved_amount not positive
            AmountExceedsAvailableError: More than the shipment can still refund
            StaleRecordError: expected_version no longer matches
            GatewayError: Payout failed; the request stays APPROVED
        """
        actor_type = resolve_actor_type(approver_id, actor_type)
        with transaction.atomic():
            request = self._locked(request_id, expected_version)
            if request.status != RefundRequestStatus.PENDING:
                raise StateConflictError(
                    f"Cannot approve refund request in state {request.status}",
                    details={"refund_request_id": str(request_id), "current_state": request.status},
                )

            amount = request.amount_requested_minor if approved_amount is None else approved_amount
            if amount <= 0:
                raise InvalidAmountError(
                    "Approved amount must be positive",
                    details={"approved_amount": amount},
                )
            available = self.escrow.available_for_refund(request.shipment_id)
            if amount > available:
                raise AmountExceedsAvailableError(
                    requested=amount,
                    available=available,
                    details={"refund_request_id": str(request_id)},
                )

            before = snapshot(request, REQUEST_FIELDS)
            request.approve(approver_id, amount)
            request.save()

        self._audit(request, "refund_request.approved", approver_id, actor_type, before)
        return self.process_approved_refund(request.id, approver_id, actor_type)

    def process_approved_refund(
        self,
        request_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
    ) -> RefundRequest:
        """
        Pay out an APPROVED request; safe to call again after a gateway error.
        """
        actor_type = resolve_actor_type(actor_id, actor_type)
        request = self.get_refund_request(request_id)
        if request.status != RefundRequestStatus.APPROVED:
            raise StateConflictError(
                f"Cannot process refund request in state {request.status}",
                details={"refund_request_id": str(request_id), "current_state": request.status},
            )

        dispute_open = PaymentTransaction.objects.filter(
            refund_request=request,
            kind=TransactionKind.DISPUTE_HOLD,
            status=TransactionStatus.HELD,
        ).exists()
        if dispute_open:
            refund_txn = self.escrow.resolve_dispute(
                request.shipment_id, request, request.amount_approved_minor, actor_id, actor_type
            )
        else:
            refund_txn = self.escrow.refund_escrow(
                request.shipment_id,
                request.amount_approved_minor,
                refund_request=request,
                actor_id=actor_id,
                actor_type=actor_type,
                reason=request.reason,
            )

        with transaction.atomic():
            request = self._locked(request_id)
            before = snapshot(request, REQUEST_FIELDS)
            request.start_processing(refund_txn)
            request.save()
            if refund_txn.status == TransactionStatus.COMPLETE:
                request.complete()
                request.save()

        self._audit(
            request, f"refund_request.{request.status}", actor_id, actor_type, before,
            metadata={"refund_transaction_id": str(refund_txn.id)},
        )
        self.logger.info(
            "Refund request paid out",
            extra={
                "refund_request_id": str(request.id),
                "refund_transaction_id": str(refund_txn.id),
                "amount_minor": refund_txn.amount_minor,
            },
        )
        return request

    def finalize_from_transaction(self, refund_txn: PaymentTransaction) -> RefundRequest | None:
        """
        Complete an APPROVED request whose refund leg was resolved by reconciliation.
        """
        if refund_txn.refund_request_id is None or refund_txn.status != TransactionStatus.COMPLETE:
            return None
        if refund_txn.metadata.get("source") == "commission":
            return None

        with transaction.atomic():
            request = self._locked(refund_txn.refund_request_id)
            if request.status != RefundRequestStatus.APPROVED:
                return request
            before = snapshot(request, REQUEST_FIELDS)
            request.start_processing(refund_txn)
            request.save()
            request.complete()
            request.save()

        self._audit(
            request, "refund_request.completed", None, ActorType.SYSTEM, before,
            metadata={"refund_transaction_id": str(refund_txn.id), "source": "reconciliation"},
        )
        return request

    # =========================================================================
    # Reject
    # =========================================================================

    def reject_refund_request(
        self,
        request_id: uuid.UUID,
        approver_id: uuid.UUID,
        reason: str | None = None,
        expected_version: int | None = None,
        actor_type: str | None = None,
    ) -> RefundRequest:
        """
        Reject a pending request. A rejected dispute releases the escrow to the payee.
        """
        actor_type = resolve_actor_type(approver_id, actor_type)
        with transaction.atomic():
            request = self._locked(request_id, expected_version)
            if request.status != RefundRequestStatus.PENDING:
                raise StateConflictError(
                    f"Cannot reject refund request in state {request.status}",
                    details={"refund_request_id": str(request_id), "current_state": request.status},
                )
            before = snapshot(request, REQUEST_FIELDS)
            request.reject(approver_id, reason or "")
            request.save()

        self._audit(request, "refund_request.rejected", approver_id, actor_type, before)

        if request.is_dispute:
            self.escrow.resolve_dispute(
                request.shipment_id, request, 0, approver_id, actor_type
            )
        return request
