"""
Billing error taxonomy.

Each exception carries the HTTP status code the API answers with. Routes
translate them into generic client messages; details stay in the logs.
"""


class BillingError(Exception):
    """Base class for billing failures."""
    status_code = 500
    public_message = "Billing error"


class AuthError(BillingError):
    status_code = 401
    public_message = "Unauthorized"


class NotConfigured(BillingError):
    """Billing integration disabled (no API key or webhook secret)."""
    status_code = 503
    public_message = "Billing is not configured"


class InvalidInput(BillingError):
    status_code = 400
    public_message = "Invalid request"


class InvalidPlanError(InvalidInput):
    public_message = "Invalid plan"


class ProvisioningError(BillingError):
    """The billing catalog could not be found or created."""
    public_message = "Could not prepare billing catalog"


class CheckoutError(BillingError):
    public_message = "Could not create checkout session"


class NoCustomerError(BillingError):
    status_code = 404
    public_message = "No subscription found"


class SignatureError(BillingError):
    """Webhook body could not be authenticated. Nothing was written."""
    status_code = 400
    public_message = "Invalid signature"


class TransitionError(BillingError):
    """A verified event could not be applied; the sender must redeliver."""
    public_message = "Webhook handler failed"


class InconsistentStateError(TransitionError):
    """A write would leave a paid tier without a subscription id."""


class UnresolvedCorrelation(BillingError):
    """A verified event names no known local user. Acknowledged, not retried."""
    status_code = 200
    public_message = "Event not correlated"


class InvalidEventError(InvalidInput):
    """A verified webhook body is not a well-formed Stripe event."""
    public_message = "Malformed event"


class WriteConflict(TransitionError):
    """A commit hit a unique constraint (e.g. the same event committed concurrently)."""


class StaleTransition(BillingError):
    """A guarded write matched no row: a newer event or another subscription got there first."""
    status_code = 200
    public_message = "Event superseded"
