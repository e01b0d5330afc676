"""
donors.py
Donor eligibility model for DonorLink.

Everything here is pure: no storage, no Flask. The web layer builds a
RegistrationForm from request data, validates it into a Donor, and hands
Donor records to the directory (see directory.py) for persistence.

A donor may give blood again 63 days (9 weeks) after their last recorded
donation. Donors who never donated are always eligible.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

# ============== CONSTANTS ==============

BLOOD_TYPES = ['A+', 'A-', 'B+', 'B-', 'O+', 'O-', 'AB+', 'AB-']
DEFAULT_BLOOD_TYPE = 'A+'

UNSELECTED_DISTRICT = 'Select district'
DISTRICTS = [UNSELECTED_DISTRICT, 'Chennai', 'Coimbatore', 'Madurai', 'Trichy', 'Bengaluru', 'Hyderabad']

DONATION_INTERVAL_DAYS = 63  # 9 weeks

PLACEHOLDER = '—'

# ============== ERRORS ==============


class DonorError(Exception):
    """Base class for all DonorLink errors"""


class ValidationError(DonorError, ValueError):
    """Form input rejected; the caller should re-prompt with the same input"""


class MissingField(ValidationError):
    def __init__(self, field):
        self.field = field
        super().__init__(f'Missing required field: {field}')


class InvalidDate(ValidationError):
    def __init__(self, text):
        self.text = text
        super().__init__(f'Invalid last donation date: {text!r}. Use YYYY-MM-DD or leave blank.')


class InvalidBloodType(ValidationError):
    def __init__(self, value):
        self.value = value
        super().__init__(f'Invalid blood type: {value!r}')


# ============== RECORDS ==============


@dataclass(frozen=True)
class RegistrationForm:
    """Raw registration input, exactly as typed or picked by the user."""
    name: str = ''
    contact_number: str = ''
    blood_type: str = DEFAULT_BLOOD_TYPE
    district: str = UNSELECTED_DISTRICT
    last_donation_date: str = ''


@dataclass(frozen=True)
class Donor:
    """One registered donor.

    ``donor_id`` and ``created_at`` are None until the directory stores the
    record. ``last_donation_date`` and ``next_eligible_date`` are either both
    None or both set, 63 days apart.
    """
    name: str
    blood_type: str
    district: str
    contact_number: str
    last_donation_date: Optional[datetime] = None
    next_eligible_date: Optional[datetime] = None
    donor_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DonorView:
    """A search result row."""
    donor_id: str
    name: str
    contact_number: str
    last_donation_date: Optional[datetime]
    next_eligible_date: Optional[datetime]
    eligible: bool

    def to_dict(self):
        return {
            'donor_id': self.donor_id,
            'name': self.name,
            'contact_number': self.contact_number,
            'last_donation_date': format_instant(self.last_donation_date),
            'next_eligible_date': format_instant(self.next_eligible_date),
            'eligible': self.eligible,
        }


# ============== INSTANTS ==============

def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes, convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_instant(value):
    """Render an instant as ISO-8601 with milliseconds and a Z suffix (None stays None)"""
    if value is None:
        return None
    value = as_utc(value)
    return value.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_instant(text):
    """
    Parse a date or instant typed by a user or read from storage.

    Accepts ``YYYY-MM-DD`` (UTC midnight) and ISO-8601 date-times, with or
    without offset or ``Z``. Naive date-times are taken as UTC.
    Raises InvalidDate when the text is not a valid calendar date.
    """
    raw = (text or '').strip()
    candidate = raw
    if candidate.endswith(('Z', 'z')):
        candidate = candidate[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        raise InvalidDate(raw) from None
    try:
        return as_utc(parsed)
    except OverflowError:
        raise InvalidDate(raw) from None


# ============== ELIGIBILITY ==============

def compute_next_eligible(donation_instant):
    """Return the instant a donor may donate again: 63 calendar days later, in UTC."""
    return as_utc(donation_instant) + timedelta(days=DONATION_INTERVAL_DAYS)


def is_eligible(next_eligible_date, now):
    """True if the donor never donated or the release instant has been reached (inclusive)."""
    if next_eligible_date is None:
        return True
    return as_utc(next_eligible_date) <= as_utc(now)


# ============== REGISTRATION ==============

def validate_registration(form: RegistrationForm) -> Donor:
    """
    Validate a registration form into an unsaved Donor.

    Checks run in order and the first failure is raised:
    name, contact, district, then the optional last donation date.
    """
    name = (form.name or '').strip()
    if not name:
        raise MissingField('name')

    contact_number = (form.contact_number or '').strip()
    if not contact_number:
        raise MissingField('contact')

    if not form.district or form.district == UNSELECTED_DISTRICT:
        raise MissingField('district')

    last_donation_date = None
    next_eligible_date = None
    if (form.last_donation_date or '').strip():
        last_donation_date = parse_instant(form.last_donation_date)
        try:
            next_eligible_date = compute_next_eligible(last_donation_date)
        except OverflowError:
            # release instant past year 9999
            raise InvalidDate(form.last_donation_date.strip()) from None

    if form.blood_type not in BLOOD_TYPES:
        raise InvalidBloodType(form.blood_type)

    return Donor(
        name=name,
        blood_type=form.blood_type,
        district=form.district,
        contact_number=contact_number,
        last_donation_date=last_donation_date,
        next_eligible_date=next_eligible_date,
    )


def validate_search(blood_type, district):
    if not district or district == UNSELECTED_DISTRICT:
        raise MissingField('district')
    if blood_type not in BLOOD_TYPES:
        raise InvalidBloodType(blood_type)


# ============== SEARCH ==============

def to_view(donor: Donor, now) -> DonorView:
    return DonorView(
        donor_id=donor.donor_id,
        name=donor.name or PLACEHOLDER,
        contact_number=donor.contact_number or PLACEHOLDER,
        last_donation_date=donor.last_donation_date,
        next_eligible_date=donor.next_eligible_date,
        eligible=is_eligible(donor.next_eligible_date, now),
    )


def search(donors: Iterable[Donor], blood_type, district, now) -> List[DonorView]:
    """
    Return exact blood type and district matches, eligible donors first.

    The sort is stable and keyed only on eligibility, so donors keep the
    order they were found in within each group.
    """
    views = [to_view(d, now) for d in donors
             if d.blood_type == blood_type and d.district == district]
    return sorted(views, key=lambda v: not v.eligible)


# ============== DONATIONS ==============

def record_donation(donor: Donor, now) -> Donor:
    """Mark a donation at ``now``; the donor becomes ineligible for 63 days."""
    now = as_utc(now)
    updated = replace(donor, last_donation_date=now, next_eligible_date=compute_next_eligible(now))
    logger.debug('Donation recorded for %s, next eligible %s',
                 donor.donor_id, format_instant(updated.next_eligible_date))
    return updated


def donation_fields(donor: Donor):
    """The partial document written to storage after a donation: both dates, always together."""
    return {
        'last_donation_date': format_instant(donor.last_donation_date),
        'next_eligible_date': format_instant(donor.next_eligible_date),
    }


# ============== DOCUMENTS ==============

def to_document(donor: Donor):
    """Serialize a Donor to the stored document shape (identifier and created_at excluded)"""
    return {
        'name': donor.name,
        'blood_type': donor.blood_type,
        'district': donor.district,
        'contact_number': donor.contact_number,
        'last_donation_date': format_instant(donor.last_donation_date),
        'next_eligible_date': format_instant(donor.next_eligible_date),
    }


def _optional_instant(value):
    if not value:
        return None
    try:
        return parse_instant(value)
    except InvalidDate:
        logger.warning('Ignoring unparseable stored date %r', value)
        return None


def from_document(doc) -> Donor:
    """Build a Donor from a stored document; tolerates missing fields like the stored data may have"""
    return Donor(
        donor_id=doc.get('donor_id'),
        name=doc.get('name') or '',
        blood_type=doc.get('blood_type') or '',
        district=doc.get('district') or '',
        contact_number=doc.get('contact_number') or '',
        last_donation_date=_optional_instant(doc.get('last_donation_date')),
        next_eligible_date=_optional_instant(doc.get('next_eligible_date')),
        created_at=_optional_instant(doc.get('created_at')),
    )
