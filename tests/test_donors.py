from datetime import datetime, timedelta, timezone

import pytest

from donors import (
    DISTRICTS, UNSELECTED_DISTRICT, Donor, InvalidBloodType, InvalidDate, MissingField,
    RegistrationForm, compute_next_eligible, donation_fields, format_instant, from_document,
    is_eligible, parse_instant, record_donation, search, to_document, validate_registration,
    validate_search,
)

UTC = timezone.utc
NOW = datetime(2025, 11, 3, 12, 0, tzinfo=UTC)


def donor(donor_id, name='Ravi', blood_type='A+', district='Chennai', next_eligible=None):
    last = next_eligible - timedelta(days=63) if next_eligible else None
    return Donor(donor_id=donor_id, name=name, blood_type=blood_type, district=district,
                 contact_number='+91000', last_donation_date=last, next_eligible_date=next_eligible)


# ============== ELIGIBILITY ==============

def test_next_eligible_is_63_days_later():
    last = datetime(2025, 9, 1, 12, 0, tzinfo=UTC)
    assert compute_next_eligible(last) == datetime(2025, 11, 3, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize('when', [
    datetime(2024, 2, 28, 0, 0, tzinfo=UTC),
    datetime(2024, 12, 31, 23, 59, 59, 999000, tzinfo=UTC),
    datetime(2025, 3, 30, 1, 30, tzinfo=UTC),
])
def test_next_eligible_keeps_time_of_day(when):
    nxt = compute_next_eligible(when)
    assert (nxt.date() - when.date()).days == 63
    assert nxt.time() == when.time()


def test_next_eligible_converts_offsets_to_utc():
    ist = timezone(timedelta(hours=5, minutes=30))
    nxt = compute_next_eligible(datetime(2025, 9, 1, 17, 30, tzinfo=ist))
    assert nxt == datetime(2025, 11, 3, 12, 0, tzinfo=UTC)
    assert nxt.utcoffset() == timedelta(0)


def test_never_donated_is_eligible():
    assert is_eligible(None, NOW)


def test_eligible_at_release_instant():
    assert is_eligible(datetime(2025, 11, 3, 12, 0, tzinfo=UTC), NOW)


def test_eligible_after_release_instant():
    assert is_eligible(NOW - timedelta(seconds=1), NOW)


def test_not_eligible_before_release_instant():
    assert not is_eligible(NOW + timedelta(milliseconds=1), NOW)


# ============== REGISTRATION ==============

def valid_form(**overrides):
    fields = dict(name='  Ravi ', contact_number=' +91987 ', blood_type='O-',
                  district='Chennai', last_donation_date='')
    fields.update(overrides)
    return RegistrationForm(**fields)


def test_registration_trims_and_leaves_dates_absent():
    d = validate_registration(valid_form())
    assert d.name == 'Ravi'
    assert d.contact_number == '+91987'
    assert d.blood_type == 'O-'
    assert d.last_donation_date is None
    assert d.next_eligible_date is None
    assert d.donor_id is None
    assert d.created_at is None


def test_registration_derives_next_eligible_from_date():
    d = validate_registration(valid_form(last_donation_date='2025-09-01'))
    assert d.last_donation_date == datetime(2025, 9, 1, tzinfo=UTC)
    assert d.next_eligible_date == datetime(2025, 11, 3, tzinfo=UTC)


def test_registration_accepts_iso_instant():
    d = validate_registration(valid_form(last_donation_date='2025-09-01T12:00:00.000Z'))
    assert d.next_eligible_date == datetime(2025, 11, 3, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize('overrides, field', [
    ({'name': '   '}, 'name'),
    ({'name': '', 'contact_number': '', 'district': UNSELECTED_DISTRICT}, 'name'),
    ({'contact_number': '\t'}, 'contact'),
    ({'contact_number': '', 'district': UNSELECTED_DISTRICT}, 'contact'),
    ({'district': UNSELECTED_DISTRICT}, 'district'),
    ({'district': UNSELECTED_DISTRICT, 'last_donation_date': 'not a date'}, 'district'),
])
def test_registration_missing_field_order(overrides, field):
    with pytest.raises(MissingField) as exc:
        validate_registration(valid_form(**overrides))
    assert exc.value.field == field


@pytest.mark.parametrize('text', ['yesterday', '2025-13-01', '2025-02-30', '01/09/2025'])
def test_registration_rejects_bad_dates(text):
    with pytest.raises(InvalidDate):
        validate_registration(valid_form(last_donation_date=text))


@pytest.mark.parametrize('text', ['9999-12-01', '9999-12-31T23:00:00-05:00', '0001-01-01T00:00:00+01:00'])
def test_registration_rejects_dates_outside_calendar_range(text):
    with pytest.raises(InvalidDate):
        validate_registration(valid_form(last_donation_date=text))


def test_registration_accepts_last_representable_donation():
    d = validate_registration(valid_form(last_donation_date='9999-10-29'))
    assert d.next_eligible_date == datetime(9999, 12, 31, tzinfo=UTC)


def test_registration_rejects_unknown_blood_type():
    with pytest.raises(InvalidBloodType):
        validate_registration(valid_form(blood_type='C+'))


def test_unselected_district_is_first_picker_entry():
    assert DISTRICTS[0] == UNSELECTED_DISTRICT


def test_search_needs_a_district():
    with pytest.raises(MissingField) as exc:
        validate_search('A+', UNSELECTED_DISTRICT)
    assert exc.value.field == 'district'
    validate_search('A+', 'Madurai')


# ============== SEARCH ==============

def test_search_filters_on_exact_match():
    donors = [
        donor('1'),
        donor('2', district='chennai'),
        donor('3', blood_type='A-'),
        donor('4', district='Madurai'),
    ]
    assert [v.donor_id for v in search(donors, 'A+', 'Chennai', NOW)] == ['1']


def test_search_partitions_eligible_first_keeping_order():
    future = NOW + timedelta(days=10)
    past = NOW - timedelta(days=10)
    donors = [
        donor('a', next_eligible=future),
        donor('b'),
        donor('c', next_eligible=future),
        donor('d', next_eligible=past),
        donor('e', next_eligible=NOW),
        donor('f', next_eligible=future),
    ]
    views = search(donors, 'A+', 'Chennai', NOW)
    assert [v.donor_id for v in views] == ['b', 'd', 'e', 'a', 'c', 'f']
    assert [v.eligible for v in views] == [True, True, True, False, False, False]


def test_search_is_idempotent():
    donors = [donor(str(i), next_eligible=NOW + timedelta(days=i - 3)) for i in range(7)]
    assert search(donors, 'A+', 'Chennai', NOW) == search(donors, 'A+', 'Chennai', NOW)


def test_search_projects_placeholders():
    blank = Donor(donor_id='x', name='', blood_type='B+', district='Trichy', contact_number='')
    view, = search([blank], 'B+', 'Trichy', NOW)
    assert view.name == '—'
    assert view.contact_number == '—'
    assert view.eligible


def test_view_to_dict():
    view, = search([donor('1', next_eligible=NOW)], 'A+', 'Chennai', NOW)
    assert view.to_dict() == {
        'donor_id': '1',
        'name': 'Ravi',
        'contact_number': '+91000',
        'last_donation_date': '2025-09-01T12:00:00.000Z',
        'next_eligible_date': '2025-11-03T12:00:00.000Z',
        'eligible': True,
    }


# ============== DONATIONS ==============

def test_record_donation_from_never_donated():
    updated = record_donation(donor('1'), NOW)
    assert updated.last_donation_date == NOW
    assert updated.next_eligible_date == NOW + timedelta(days=63)
    assert not is_eligible(updated.next_eligible_date, NOW)


def test_record_donation_overwrites_when_already_ineligible():
    original = donor('1', next_eligible=NOW + timedelta(days=30))
    later = NOW + timedelta(hours=1)
    updated = record_donation(original, later)
    assert updated.last_donation_date == later
    assert updated.next_eligible_date == later + timedelta(days=63)
    assert updated.donor_id == original.donor_id
    assert updated.name == original.name


def test_donation_fields_are_paired():
    fields = donation_fields(record_donation(donor('1'), NOW))
    assert fields == {
        'last_donation_date': '2025-11-03T12:00:00.000Z',
        'next_eligible_date': '2026-01-05T12:00:00.000Z',
    }


# ============== DOCUMENTS ==============

def test_instant_formatting():
    assert format_instant(datetime(2025, 9, 1, 12, 0, 0, 123456, tzinfo=UTC)) == '2025-09-01T12:00:00.123Z'
    assert format_instant(None) is None
    assert parse_instant('2025-09-01T12:00:00.000Z') == datetime(2025, 9, 1, 12, 0, tzinfo=UTC)


def test_document_round_trip_keeps_identity_fields():
    doc = to_document(record_donation(donor('1'), NOW))
    doc.update(donor_id='DON-1', created_at='2025-01-01T00:00:00.000Z')
    d = from_document(doc)
    assert d.donor_id == 'DON-1'
    assert d.created_at == datetime(2025, 1, 1, tzinfo=UTC)
    assert d.next_eligible_date - d.last_donation_date == timedelta(days=63)


def test_from_document_tolerates_missing_and_bad_dates():
    d = from_document({'donor_id': 'DON-2', 'next_eligible_date': 'garbage'})
    assert d.name == ''
    assert d.next_eligible_date is None
    assert is_eligible(d.next_eligible_date, NOW)


def test_early_year_instants_are_zero_padded():
    assert format_instant(datetime(999, 1, 1, tzinfo=UTC)) == '0999-01-01T00:00:00.000Z'


def test_document_round_trip_keeps_early_year_dates():
    d = validate_registration(valid_form(last_donation_date='0999-01-01'))
    doc = to_document(d)
    assert doc['last_donation_date'] == '0999-01-01T00:00:00.000Z'
    back = from_document(doc)
    assert back.last_donation_date == datetime(999, 1, 1, tzinfo=UTC)
    assert back.next_eligible_date - back.last_donation_date == timedelta(days=63)
