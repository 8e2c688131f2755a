"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with common service utilities

Pattern Comparison:
    - Exceptions: raised inside managers, where the failing step knows
      the error kind (InvalidAmountError, StateConflictError, ...)
    - ServiceResult: returned at the boundary (PaymentOrchestrator), so
      callers always receive a stable error code instead of a traceback

Usage:
    from core.services import BaseService, ServiceResult

    class WalletQueries(BaseService):
        @classmethod
        def balance(cls, wallet_id) -> ServiceResult[int]:
            wallet = Wallet.objects.filter(id=wallet_id).first()
            if wallet is None:
                return ServiceResult.failure(
                    "Wallet not found", error_code="WALLET_NOT_FOUND"
                )
            return ServiceResult.success(wallet.balance_minor)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

from core.exceptions import BaseApplicationError

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

# Generic type for ServiceResult data
T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures
        details: Extra failure context copied from the domain exception

    Usage:
        result = orchestrator.release_escrow(shipment_id, actor_id)
        if result.success:
            settlement = result.data
        else:
            print(f"Error: {result.error} ({result.error_code})")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)
    details: dict[str, Any] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
            details: Additional context (ids, amounts, states)

        Example:
            return ServiceResult.failure(
                "Delivery has not been confirmed",
                error_code="DELIVERY_NOT_CONFIRMED",
            )
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
            details=details,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        Application errors keep their own message, code and details. Any
        other exception falls back to the class name as the code.

        Args:
            exc: The caught exception
            error_code: Optional error code override
        """
        if isinstance(exc, BaseApplicationError):
            return cls(
                success=False,
                error=exc.message,
                error_code=error_code or exc.error_code,
                details=exc.details or None,
            )
        return cls(
            success=False,
            error=str(exc),
            error_code=error_code or exc.__class__.__name__.upper(),
        )

    def to_response(self) -> dict[str, Any]:
        """
        Convert to a plain dict for dashboards and admin tools.

        Returns:
            Dict with success status and data or error details
        """
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        if self.details:
            response["details"] = self.details
        return response

    def map(self, func) -> ServiceResult:
        """
        Transform the data if successful.

        Example:
            result = orchestrator.wallet_balance(owner_id, WalletKind.FLEET)
            rupees = result.map(lambda minor: minor / 100)
        """
        if self.success and self.data is not None:
            return ServiceResult.success(func(self.data))
        return self  # type: ignore

    def __bool__(self) -> bool:
        """Allow `if result:` as shorthand for `if result.success:`."""
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management
    - Exception to ServiceResult conversion

    Design Notes:
        - Services hold collaborators (gateway, config store, audit logger)
          passed to the constructor, never module-level singletons
        - Use ServiceResult at the outer boundary only
        - Raise exceptions for failures inside managers
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around django.db.transaction.atomic() that makes the
        transaction boundary explicit in service code.

        Example:
            with cls.atomic():
                txn.mark_held()
                txn.save()
                LedgerService.record_entries([...])
                # If the ledger write fails, the status change rolls back
        """
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Convert exception to ServiceResult with logging.

        Args:
            exc: The caught exception
            context: Additional context for logging
            log_level: Logging level (default ERROR)

        Returns:
            ServiceResult with error details
        """
        logger = cls.get_logger()
        message = f"{context}: {exc}" if context else str(exc)
        logger.log(log_level, message, exc_info=log_level >= logging.ERROR)
        return ServiceResult.from_exception(exc)
