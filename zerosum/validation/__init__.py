"""Validation package."""

from zerosum.validation.validator import MutationValidator, ValidationError

__all__ = ["MutationValidator", "ValidationError"]
