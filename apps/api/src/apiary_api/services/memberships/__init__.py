"""Membership ledger and companion cascade."""

from .companion import CompanionMembershipResolver, CompanionOutcome
from .ledger import MembershipDetails, MembershipLedger

__all__ = ["CompanionMembershipResolver", "CompanionOutcome", "MembershipDetails", "MembershipLedger"]
