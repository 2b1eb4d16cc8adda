"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
from .credit_package import CreditPackage
from .purchase_session import PurchaseSession
from .audit_session import AuditSession
from .audit_result import AuditResult
from .enterprise_contact import EnterpriseContact
