"""
Database Schemas for Gaon Bazaar (Classifieds)

Each Pydantic model maps to a MongoDB collection. Fields are snake_case in
Python and stored under their camelCase alias, e.g. ``user_id`` -> ``userId``.
Timestamps (createdAt, updatedAt, timestamp) are stamped by the server and are
not part of the models.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, model_validator
from pydantic.alias_generators import to_camel

AdStatus = Literal['pending', 'approved', 'rejected']
IssueStatus = Literal['new', 'in-progress', 'resolved']
Role = Literal['Farmer', 'Admin']
NotificationType = Literal['ad_status', 'issue_status', 'broadcast']

# Forward-only order of issue states
ISSUE_STATUS_ORDER = ('new', 'in-progress', 'resolved')

CATEGORIES: Dict[str, List[str]] = {
    'पशुधन': ['गाय', 'बैल', 'म्हैस', 'शेळी', 'मेंढी', 'कुक्कुटपालन'],
    'शेती उत्पादने': ['कांदा', 'कापूस', 'धान्य', 'भाजीपाला', 'फळे'],
    'शेतीसाठी साधनं': ['ट्रॅक्टर', 'अवजारं', 'सिंचन साहित्य', 'हार्वेस्टर'],
    'शेती व गाव सेवा': ['वाहतूक', 'ड्रोन स्प्रे', 'कंत्राटी शेती', 'पशुवैद्यक'],
    'गावातील गरज': ['बांधकाम साहित्य', 'सेकंड हँड वाहनं', 'खाद्यपदार्थ'],
    'व्यावसायिक सेवा': ['प्लंबर', 'इलेक्ट्रिशियन', 'सुतार', 'मिस्त्री', 'मेकॅनिक', 'DJ/टेंट', 'टॅक्सी'],
    'आर्थिक': ['उधारी/इनव्हॉईस', 'बचत संस्था', 'सरकारी योजना'],
}


class StoredModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Community members; the document id is the identity provider uid
class UserProfile(StoredModel):
    email: EmailStr = Field(..., description="Email address")
    name: Optional[str] = Field(None, max_length=100)
    mobile_number: Optional[str] = Field(None, pattern=r'^\d{10}$')
    photo_url: Optional[HttpUrl] = Field(None, alias='photoURL')
    role: Role = Field('Farmer')
    disabled: bool = Field(False)


# The editable part of an ad, as submitted by its owner
class AdForm(StoredModel):
    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field('', max_length=5000)
    category: str = Field(..., description="Category name from CATEGORIES")
    subcategory: Optional[str] = None
    price: float = Field(0, ge=0)
    location: str = Field(..., min_length=1, description="Village")
    taluka: Optional[str] = None
    photos: List[HttpUrl] = Field(default_factory=list, max_length=5)
    mobile_number: str = Field(..., pattern=r'^\d{10}$')

    @model_validator(mode='after')
    def check_category(self):
        if self.category not in CATEGORIES:
            raise ValueError(f"Unknown category: {self.category}")
        if self.subcategory and self.subcategory not in CATEGORIES[self.category]:
            raise ValueError(f"Unknown subcategory for {self.category}: {self.subcategory}")
        return self


# Moderated classified listing
class Ad(AdForm):
    user_id: str
    user_name: str
    status: AdStatus = Field('pending')
    rejection_reason: Optional[str] = None


class ParticipantProfile(BaseModel):
    name: str
    photoURL: Optional[str] = None


# Denormalized chat thread between an ad owner and one interested viewer
class Conversation(StoredModel):
    ad_id: str
    ad_title: str
    ad_photo: str = ''
    participants: List[str] = Field(..., min_length=2, max_length=2)
    participant_profiles: Dict[str, ParticipantProfile]
    last_message: str = ''
    last_message_sender_id: str = ''
    unread_by: Dict[str, bool]


# Append-only chat line; conversation_id plays the sub-collection role
class Message(StoredModel):
    conversation_id: str
    text: str = Field(..., min_length=1, max_length=5000)
    sender_id: str


class Notification(StoredModel):
    user_id: str
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    link: Optional[str] = None
    is_read: bool = Field(False)
    type: NotificationType
    batch_id: Optional[str] = None


class Issue(StoredModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    description: str = Field(..., min_length=1, max_length=5000)
    status: IssueStatus = Field('new')
    user_id: Optional[str] = None


class HelpMessage(StoredModel):
    user_id: str
    user_email: EmailStr
    message: str = Field(..., min_length=1, max_length=5000)


class SavedAd(StoredModel):
    user_id: str
    ad_id: str


class AdvertisementConfig(StoredModel):
    image_url: HttpUrl
    enabled: bool = Field(True)


class PaymentConfig(StoredModel):
    upi_id: Optional[str] = Field(None, max_length=100)
    qr_code_url: Optional[HttpUrl] = None
