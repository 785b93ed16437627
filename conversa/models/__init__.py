from conversa.models.account import Account
from conversa.models.campaign import Campaign, CampaignContact
from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.job import Job
from conversa.models.message import Message
from conversa.models.survey import Survey

__all__ = [
    "Account",
    "Contact",
    "Conversation",
    "Message",
    "Campaign",
    "CampaignContact",
    "Survey",
    "Job",
]
