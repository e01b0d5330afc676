"""
DonorLink - District Blood Donor Finder
Flask application

One screen: register a donor, search donors by district and blood type
(eligible donors first), and mark a donor as having donated.
A small JSON API exposes the same operations.

Storage is a DynamoDB table (DONORLINK_BACKEND=dynamodb) or a local JSON
file (default), see directory.py.
"""
import logging
import os

import click
from flask import (
    Flask, current_app, flash, jsonify, redirect, render_template, request, url_for,
)

from directory import DonorNotFound, StorageFailure, get_directory, seed_sample_donors
from donors import (
    BLOOD_TYPES, DEFAULT_BLOOD_TYPE, DISTRICTS, UNSELECTED_DISTRICT,
    InvalidBloodType, InvalidDate, MissingField, RegistrationForm, ValidationError,
    donation_fields, format_instant, record_donation, search, to_document, utcnow,
    validate_registration, validate_search,
)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _districts_from_env():
    raw = os.environ.get('DONORLINK_DISTRICTS')
    if not raw:
        return list(DISTRICTS)
    names = [d.strip() for d in raw.split(',') if d.strip()]
    return [UNSELECTED_DISTRICT] + [d for d in names if d != UNSELECTED_DISTRICT]


def default_config():
    return {
        'SECRET_KEY': os.environ.get('DONORLINK_SECRET_KEY', 'donorlink-dev-key'),
        'DONOR_BACKEND': os.environ.get('DONORLINK_BACKEND', 'local'),
        'DONOR_TABLE_NAME': os.environ.get('DONORLINK_TABLE', 'Donors'),
        'DONOR_INDEX_NAME': os.environ.get('DONORLINK_INDEX'),
        'AWS_REGION': os.environ.get('AWS_REGION', 'us-east-1'),
        'DYNAMODB_ENDPOINT_URL': os.environ.get('DYNAMODB_ENDPOINT_URL'),
        'DATA_DIR': os.environ.get('DONORLINK_DATA_DIR', os.path.join(BASE_DIR, 'data')),
        'DISTRICTS': _districts_from_env(),
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),
        'CLOCK': utcnow,
    }


def create_app(config=None, directory=None):
    """Flask application factory"""
    app = Flask(__name__)
    app.config.from_mapping(default_config())
    if config:
        app.config.from_mapping(config)
    app.logger.setLevel(app.config['LOG_LEVEL'])

    app.extensions['donor_directory'] = directory or get_directory(app.config)

    _register_template_helpers(app)
    _register_routes(app)
    _register_api(app)
    _register_commands(app)
    return app


# ============== HELPERS ==============

def get_donor_directory():
    return current_app.extensions['donor_directory']


def now():
    return current_app.config['CLOCK']()


REGISTRATION_DEFAULTS = {
    'name': '',
    'contact_number': '',
    'blood_type': DEFAULT_BLOOD_TYPE,
    'district': UNSELECTED_DISTRICT,
    'last_donation_date': '',
}


def registration_form_from(data):
    """Build a RegistrationForm from form fields or a JSON object; missing or null fields get defaults"""
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object with donor fields')
    values = {}
    for key, default in REGISTRATION_DEFAULTS.items():
        value = data.get(key)
        if value is None:
            value = default
        elif not isinstance(value, str):
            raise ValidationError(f'Field {key} must be a string')
        values[key] = value
    return RegistrationForm(**values)


def validation_message(error):
    """User-facing text for a validation error"""
    if isinstance(error, MissingField):
        return 'Please fill name, contact and district'
    if isinstance(error, InvalidDate):
        return 'Invalid last donation date. Use YYYY-MM-DD or leave blank.'
    if isinstance(error, InvalidBloodType):
        return f'Unknown blood type: {error.value}'
    return str(error)


def _register_template_helpers(app):
    @app.template_filter('date')
    def format_date(value):
        if value is None:
            return '—'
        return value.date().isoformat()

    @app.context_processor
    def pickers():
        return {
            'blood_types': BLOOD_TYPES,
            'districts': current_app.config['DISTRICTS'],
        }


def render_index(form=None, search_blood_type=DEFAULT_BLOOD_TYPE,
                 search_district=UNSELECTED_DISTRICT, results=None, status=200):
    return render_template(
        'index.html',
        form=form or RegistrationForm(),
        search_blood_type=search_blood_type,
        search_district=search_district,
        results=results,
    ), status


# ============== PAGES ==============

def _register_routes(app):

    @app.route('/')
    def index():
        """Registration form, search form and search results"""
        blood_type = request.args.get('search_blood_type')
        district = request.args.get('search_district')
        if blood_type is None and district is None:
            return render_index()

        blood_type = blood_type or DEFAULT_BLOOD_TYPE
        district = district or UNSELECTED_DISTRICT
        try:
            validate_search(blood_type, district)
        except MissingField:
            flash('Please select a district to search', 'error')
            return render_index(search_blood_type=blood_type, search_district=district)
        except InvalidBloodType as e:
            flash(validation_message(e), 'error')
            return render_index(search_district=district)

        try:
            donors = get_donor_directory().query_by_district_and_blood_type(district, blood_type)
        except StorageFailure:
            app.logger.exception('Donor search failed')
            flash('Error searching donors', 'error')
            return render_index(search_blood_type=blood_type, search_district=district, status=502)

        results = search(donors, blood_type, district, now())
        return render_index(search_blood_type=blood_type, search_district=district, results=results)

    @app.route('/donors', methods=['POST'])
    def register_donor():
        """Save a new donor from the registration form"""
        form = registration_form_from(request.form)
        try:
            donor = validate_registration(form)
        except ValidationError as e:
            flash(validation_message(e), 'error')
            return render_index(form=form, status=400)

        try:
            donor_id = get_donor_directory().create(to_document(donor))
        except StorageFailure:
            app.logger.exception('Donor registration failed')
            flash('Could not save donor.', 'error')
            return render_index(form=form, status=502)

        app.logger.info('New donor registered: %s (%s, %s)', donor_id, donor.blood_type, donor.district)
        flash('Donor saved successfully.', 'success')
        return redirect(url_for('index'))

    @app.route('/donors/<donor_id>/donation', methods=['POST'])
    def mark_donated(donor_id):
        """Record a donation now and refresh the search"""
        back = _back_to_search()
        directory = get_donor_directory()
        try:
            donor = directory.get(donor_id)
            if donor is None:
                raise DonorNotFound(donor_id)
            updated = record_donation(donor, now())
            directory.update(donor_id, donation_fields(updated))
        except DonorNotFound:
            flash('Donor not found!', 'error')
            return back
        except StorageFailure:
            app.logger.exception('Marking donation failed for %s', donor_id)
            flash('Could not mark donation.', 'error')
            return back

        app.logger.info('Donation recorded: %s, next eligible %s',
                        donor_id, format_instant(updated.next_eligible_date))
        flash('Donor marked as donated — they will be ineligible for 9 weeks.', 'success')
        return back

    @app.route('/donors/<donor_id>/contact')
    def show_contact(donor_id):
        """Show a donor's contact number"""
        try:
            donor = get_donor_directory().get(donor_id)
        except StorageFailure:
            app.logger.exception('Loading donor %s failed', donor_id)
            flash('Could not load donor.', 'error')
            return _back_to_search()
        if donor is None:
            flash('Donor not found!', 'error')
        else:
            flash(f'Contact Number: {donor.contact_number}', 'info')
        return _back_to_search()

    @app.errorhandler(404)
    def not_found(e):
        return render_template('404.html'), 404


def _back_to_search():
    source = request.form if request.method == 'POST' else request.args
    blood_type = source.get('search_blood_type')
    district = source.get('search_district')
    if blood_type and district:
        return redirect(url_for('index', search_blood_type=blood_type, search_district=district))
    return redirect(url_for('index'))


# ============== JSON API ==============

def _register_api(app):

    @app.route('/api/donors')
    def api_search_donors():
        """Search donors: ?district=...&blood_type=..."""
        blood_type = request.args.get('blood_type', DEFAULT_BLOOD_TYPE)
        district = request.args.get('district', UNSELECTED_DISTRICT)
        try:
            validate_search(blood_type, district)
            donors = get_donor_directory().query_by_district_and_blood_type(district, blood_type)
        except ValidationError as e:
            return jsonify({'error': str(e)}), 400
        except StorageFailure:
            app.logger.exception('Donor search failed')
            return jsonify({'error': 'Error searching donors'}), 502
        return jsonify([v.to_dict() for v in search(donors, blood_type, district, now())])

    @app.route('/api/donors', methods=['POST'])
    def api_register_donor():
        try:
            form = registration_form_from(request.get_json(silent=True) or {})
            donor = validate_registration(form)
            donor_id = get_donor_directory().create(to_document(donor))
        except ValidationError as e:
            return jsonify({'error': str(e)}), 400
        except StorageFailure:
            app.logger.exception('Donor registration failed')
            return jsonify({'error': 'Could not save donor.'}), 502
        app.logger.info('New donor registered: %s (%s, %s)', donor_id, donor.blood_type, donor.district)
        return jsonify({'donor_id': donor_id, **to_document(donor)}), 201

    @app.route('/api/donors/<donor_id>')
    def api_get_donor(donor_id):
        try:
            donor = get_donor_directory().get(donor_id)
        except StorageFailure:
            app.logger.exception('Loading donor %s failed', donor_id)
            return jsonify({'error': 'Could not load donor.'}), 502
        if donor is None:
            return jsonify({'error': 'Donor not found'}), 404
        return jsonify({'donor_id': donor.donor_id, 'created_at': format_instant(donor.created_at),
                        **to_document(donor)})

    @app.route('/api/donors/<donor_id>/donation', methods=['POST'])
    def api_mark_donated(donor_id):
        directory = get_donor_directory()
        try:
            donor = directory.get(donor_id)
            if donor is None:
                raise DonorNotFound(donor_id)
            updated = record_donation(donor, now())
            fields = donation_fields(updated)
            directory.update(donor_id, fields)
        except DonorNotFound:
            return jsonify({'error': 'Donor not found'}), 404
        except StorageFailure:
            app.logger.exception('Marking donation failed for %s', donor_id)
            return jsonify({'error': 'Could not mark donation.'}), 502
        app.logger.info('Donation recorded: %s', donor_id)
        return jsonify({'donor_id': donor_id, **fields})


# ============== COMMANDS ==============

def _register_commands(app):

    @app.cli.command('init-table')
    def init_table():
        """Create the DynamoDB donors table."""
        directory = get_donor_directory()
        if not hasattr(directory, 'create_table'):
            raise click.ClickException('init-table needs DONORLINK_BACKEND=dynamodb')
        try:
            directory.create_table()
        except StorageFailure as e:
            raise click.ClickException(str(e))
        click.echo(f'Created table {directory.table_name}')

    @app.cli.command('seed-donors')
    def seed_donors():
        """Add sample donors."""
        try:
            created = seed_sample_donors(get_donor_directory())
        except StorageFailure as e:
            raise click.ClickException(str(e))
        click.echo(f'Added {len(created)} sample donor(s): {", ".join(created)}')


# ============== MAIN ==============

if __name__ == '__main__':
    logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    create_app().run(debug=True, host='0.0.0.0', port=5000)
