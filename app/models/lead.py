# app/models/lead.py - Lead fields touched by call reconciliation

from enum import Enum

class LeadStatus(str, Enum):
    """Lead statuses the call pipeline reads or writes"""
    NEW = "new"
    NOT_FOUND = "Not Found"
    MAYBE = "Maybe"
    INTERESTED = "Interested"

class LeadSource(str, Enum):
    INCOMING_CALL = "INCOMING_CALL"

# Engagement rank - call outcomes only ever move a lead upwards
LEAD_ENGAGEMENT_RANK = {
    None: 0,
    "": 0,
    LeadStatus.NEW.value: 0,
    LeadStatus.NOT_FOUND.value: 0,
    LeadStatus.MAYBE.value: 1,
    LeadStatus.INTERESTED.value: 2,
}

def engagement_rank(status) -> int:
    """Rank of a lead status; statuses set by sales (closed, not interested...) are off the scale"""
    return LEAD_ENGAGEMENT_RANK.get(status, 99)

def placeholder_lead_name(phone: str) -> str:
    return f"Unknown Caller ({phone})"
