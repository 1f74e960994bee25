"""Billing failures, each mapped onto the shared error taxonomy."""

from preply.core.errors import (
    AuthError,
    BusinessRuleError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


class InvalidRequest(ValidationError):
    code = "invalid_request"


class InvalidPlan(ValidationError):
    code = "invalid_plan"


class InvalidSignature(ValidationError):
    code = "invalid_signature"


class Unauthenticated(AuthError):
    pass


class AlreadySubscribed(BusinessRuleError):
    code = "already_subscribed"


class OrderNotFound(NotFoundError):
    code = "order_not_found"


class PlanConfigMissing(IntegrityError):
    code = "plan_config_missing"


class SubscriptionUpdateFailed(PersistenceError):
    code = "subscription_update_failed"
