from dojoflow.models.credit_balance import CreditBalance
from dojoflow.models.credit_top_up import CreditTopUp
from dojoflow.models.credit_transaction import CreditTransaction
from dojoflow.models.notification import Notification
from dojoflow.models.organization import Organization
from dojoflow.models.user import User

__all__ = [
    "CreditBalance",
    "CreditTopUp",
    "CreditTransaction",
    "Notification",
    "Organization",
    "User",
]
