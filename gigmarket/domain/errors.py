class MarketplaceError(Exception):
    """Base exception for marketplace errors."""
    status_code = 500
    error = "internal_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(MarketplaceError):
    status_code = 400
    error = "validation_error"


class AuthenticationError(MarketplaceError):
    status_code = 401
    error = "authentication_required"


class AuthorizationError(MarketplaceError):
    status_code = 403
    error = "forbidden"


class NotFoundError(MarketplaceError):
    status_code = 404
    error = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class InvalidTransitionError(MarketplaceError):
    status_code = 400
    error = "invalid_transition"

    def __init__(self, entity: str, entity_id, current_status, target_status):
        super().__init__(
            f"Cannot transition {entity} {entity_id} from {current_status} to {target_status}",
            entity=entity,
            entity_id=entity_id,
            current_status=str(current_status),
            target_status=str(target_status),
        )


class ConflictError(MarketplaceError):
    status_code = 409
    error = "conflict"


class LocationVerificationError(MarketplaceError):
    status_code = 409
    error = "location_verification_failed"

    def __init__(self, job_id: int, distance_meters: float, radius_meters: float):
        super().__init__(
            f"Location is {round(distance_meters)}m from job {job_id} (max: {round(radius_meters)}m)",
            job_id=job_id,
            distance_meters=round(distance_meters, 1),
            radius_meters=radius_meters,
        )
        self.distance_meters = distance_meters
        self.radius_meters = radius_meters


class PaymentNotSucceededError(MarketplaceError):
    status_code = 400
    error = "payment_not_succeeded"


class NoPayoutAccountError(MarketplaceError):
    status_code = 400
    error = "no_payout_account"


class MissingEmailError(MarketplaceError):
    status_code = 400
    error = "missing_email"


class InvalidSignatureError(MarketplaceError):
    status_code = 400
    error = "invalid_signature"


class GatewayError(MarketplaceError):
    """The payment gateway call did not go through."""
    status_code = 502
    error = "gateway_error"
    retriable = False


class GatewayUnavailableError(GatewayError):
    """Timeout or connection failure; safe to retry later."""
    error = "gateway_unavailable"
    retriable = True


class GatewayRejectedError(GatewayError):
    """The gateway answered and declined the request."""
    error = "gateway_rejected"
