from __future__ import annotations
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

class ConsentType(str, Enum):
    SINGLE_PAYMENT = "single-payment"
    VARIABLE_ON_DEMAND_PAYMENT = "variable-on-demand-payment"
    DATA_SHARING = "data-sharing"

class ConsentStatus(str, Enum):
    REDIRECT_READY = "redirect_ready"
    CALLBACK_RECEIVED = "callback_received"
    AUTHORIZATION_CODE_RECEIVED = "authorization_code_received"
    CALLBACK_ERROR = "callback_error"
    MCP_RECORDED = "mcp_recorded"

DATA_PERMISSIONS = (
    "ReadAccountsBasic",
    "ReadAccountsDetail",
    "ReadBalances",
    "ReadBeneficiariesBasic",
    "ReadBeneficiariesDetail",
    "ReadTransactionsBasic",
    "ReadTransactionsDetail",
    "ReadTransactionsCredits",
    "ReadTransactionsDebits",
    "ReadScheduledPaymentsBasic",
    "ReadScheduledPaymentsDetail",
    "ReadDirectDebits",
    "ReadStandingOrdersBasic",
    "ReadStandingOrdersDetail",
    "ReadConsents",
    "ReadPartyUser",
    "ReadPartyUserIdentity",
    "ReadParty",
)

# Loose request bodies; ConsentSubmitter validates and owns the error messages
class SinglePaymentConsentRequest(BaseModel):
    payment_amount: Any = None
    bank_label: Optional[str] = None

class VariableOnDemandConsentRequest(BaseModel):
    max_payment_amount: Any = None
    bank_label: Optional[str] = None

class DataSharingConsentRequest(BaseModel):
    data_permissions: Any = None
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    bank_label: Optional[str] = None

class ConsentCreateResponse(BaseModel):
    redirect: str
    consent_id: str
    code_verifier: str

class AuthorizationCodeExchangeRequest(BaseModel):
    code: str = Field(min_length=1)
    code_verifier: str = Field(min_length=1)

class ConsentSnapshotResponse(BaseModel):
    consent: Dict[str, Any]

class AuthCodeRecordRequest(BaseModel):
    code: Optional[str] = None
    code_verifier: Optional[str] = None
    consent_id: Optional[str] = None
    state: Optional[str] = None
    redirect_query: Dict[str, Any] = Field(default_factory=dict)

class AuthCodeEntries(BaseModel):
    entries: List[Dict[str, Any]]

class AccountBalancesResponse(BaseModel):
    consent_id: str
    accounts: Dict[str, Any]
