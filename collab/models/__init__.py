from collab.models.user import User
from collab.models.conversation import Conversation
from collab.models.message import Message
from collab.models.wallet import Wallet, Transaction
from collab.models.escrow import EscrowHold
from collab.models.payment import PaymentOrder
from collab.models.notification import Notification, DeviceToken
from collab.models.action_receipt import ActionReceipt
from collab.models.audit_log import AuditLog

__all__ = [
    "User",
    "Conversation",
    "Message",
    "Wallet",
    "Transaction",
    "EscrowHold",
    "PaymentOrder",
    "Notification",
    "DeviceToken",
    "ActionReceipt",
    "AuditLog",
]
