"""
directory.py
Donor Directory: where donor documents live.

Two backends share the same four calls (create, get, query, update):
- DynamoDirectory stores donors in an AWS DynamoDB table via boto3.
- LocalDirectory keeps donors in memory and persists them to
  data/donors.json for local development.

The backend is picked by configuration (see get_directory). Any failure
talking to storage is raised as StorageFailure; there is no silent
fallback from one backend to the other.
"""
import json
import logging
import os
import threading
import uuid

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from donors import (
    DonorError, RegistrationForm, format_instant, from_document, to_document,
    utcnow, validate_registration,
)

logger = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = 'Donors'
DONORS_FILE_NAME = 'donors.json'


class StorageFailure(DonorError):
    """The donor directory could not complete a create, query or update"""


class DonorNotFound(StorageFailure):
    def __init__(self, donor_id):
        self.donor_id = donor_id
        super().__init__(f'Donor not found: {donor_id}')


def generate_id(prefix='DON'):
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _new_item(fields, clock):
    item = dict(fields)
    item['donor_id'] = generate_id('DON')
    item['created_at'] = format_instant(clock())
    return item


# ============== DYNAMODB ==============

class DynamoDirectory:
    """Donor documents in a DynamoDB table keyed by ``donor_id``.

    Searches use a global secondary index on (district, blood_type) when
    ``index_name`` is given, otherwise a filtered scan.
    """

    def __init__(self, table_name=DEFAULT_TABLE_NAME, region_name='us-east-1',
                 endpoint_url=None, index_name=None, resource=None, clock=utcnow):
        self.dynamodb = resource or boto3.resource('dynamodb', region_name=region_name,
                                                   endpoint_url=endpoint_url)
        self.table_name = table_name
        self.table = self.dynamodb.Table(table_name)
        self.index_name = index_name
        self.clock = clock

    def create(self, fields):
        item = _new_item(fields, self.clock)
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f'Could not save donor: {e}') from e
        logger.info('Created donor %s in %s', item['donor_id'], self.table_name)
        return item['donor_id']

    def get(self, donor_id):
        try:
            resp = self.table.get_item(Key={'donor_id': donor_id})
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f'Could not load donor {donor_id}: {e}') from e
        item = resp.get('Item')
        return from_document(item) if item else None

    def query_by_district_and_blood_type(self, district, blood_type):
        if self.index_name:
            call = self.table.query
            kwargs = {
                'IndexName': self.index_name,
                'KeyConditionExpression': Key('district').eq(district) & Key('blood_type').eq(blood_type),
            }
        else:
            call = self.table.scan
            kwargs = {
                'FilterExpression': Attr('district').eq(district) & Attr('blood_type').eq(blood_type),
            }

        items = []
        try:
            while True:
                resp = call(**kwargs)
                items.extend(resp.get('Items', []))
                last_key = resp.get('LastEvaluatedKey')
                if not last_key:
                    break
                kwargs['ExclusiveStartKey'] = last_key
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f'Could not search donors: {e}') from e
        return [from_document(i) for i in items]

    def update(self, donor_id, fields):
        if not fields:
            return
        names = {}
        values = {}
        assignments = []
        for n, (key, value) in enumerate(sorted(fields.items())):
            names[f'#f{n}'] = key
            values[f':f{n}'] = value
            assignments.append(f'#f{n} = :f{n}')
        try:
            self.table.update_item(
                Key={'donor_id': donor_id},
                UpdateExpression='SET ' + ', '.join(assignments),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ConditionExpression=Attr('donor_id').exists(),
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
                raise DonorNotFound(donor_id) from e
            raise StorageFailure(f'Could not update donor {donor_id}: {e}') from e
        except BotoCoreError as e:
            raise StorageFailure(f'Could not update donor {donor_id}: {e}') from e

    def create_table(self, wait=True):
        """Provision the donors table (and the search index when configured)."""
        params = {
            'TableName': self.table_name,
            'KeySchema': [{'AttributeName': 'donor_id', 'KeyType': 'HASH'}],
            'AttributeDefinitions': [{'AttributeName': 'donor_id', 'AttributeType': 'S'}],
            'BillingMode': 'PAY_PER_REQUEST',
        }
        if self.index_name:
            params['AttributeDefinitions'] += [
                {'AttributeName': 'district', 'AttributeType': 'S'},
                {'AttributeName': 'blood_type', 'AttributeType': 'S'},
            ]
            params['GlobalSecondaryIndexes'] = [{
                'IndexName': self.index_name,
                'KeySchema': [
                    {'AttributeName': 'district', 'KeyType': 'HASH'},
                    {'AttributeName': 'blood_type', 'KeyType': 'RANGE'},
                ],
                'Projection': {'ProjectionType': 'ALL'},
            }]
        try:
            table = self.dynamodb.create_table(**params)
            if wait:
                table.wait_until_exists()
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f'Could not create table {self.table_name}: {e}') from e
        self.table = table
        logger.info('Created table %s', self.table_name)
        return table


# ============== LOCAL JSON FILE ==============

class LocalDirectory:
    """Donor documents in memory, saved to a JSON file after every write.

    Pass ``data_dir=None`` to keep everything in memory only.
    """

    def __init__(self, data_dir=None, clock=utcnow):
        self.clock = clock
        self.path = os.path.join(data_dir, DONORS_FILE_NAME) if data_dir else None
        self._lock = threading.Lock()
        self._donors = {}
        if self.path:
            os.makedirs(data_dir, exist_ok=True)
            self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                seed = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageFailure(f'Could not read {self.path}: {e}') from e
        if not isinstance(seed, list) or not all(isinstance(d, dict) for d in seed):
            raise StorageFailure(f'Expected a list of donor documents in {self.path}')
        for d in seed:
            self._donors[d.get('donor_id')] = d
        logger.debug('Loaded %d donors from %s', len(self._donors), self.path)

    def _save(self):
        if not self.path:
            return
        try:
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(list(self._donors.values()), f, ensure_ascii=False, indent=2)
        except OSError as e:
            raise StorageFailure(f'Could not write {self.path}: {e}') from e

    def create(self, fields):
        item = _new_item(fields, self.clock)
        with self._lock:
            self._donors[item['donor_id']] = item
            try:
                self._save()
            except StorageFailure:
                self._donors.pop(item['donor_id'], None)
                raise
        logger.info('Created donor %s', item['donor_id'])
        return item['donor_id']

    def get(self, donor_id):
        with self._lock:
            item = self._donors.get(donor_id)
        return from_document(item) if item else None

    def query_by_district_and_blood_type(self, district, blood_type):
        with self._lock:
            items = [dict(d) for d in self._donors.values()
                     if d.get('district') == district and d.get('blood_type') == blood_type]
        return [from_document(i) for i in items]

    def update(self, donor_id, fields):
        with self._lock:
            item = self._donors.get(donor_id)
            if item is None:
                raise DonorNotFound(donor_id)
            previous = dict(item)
            item.update(fields)
            try:
                self._save()
            except StorageFailure:
                self._donors[donor_id] = previous
                raise


# ============== FACTORY ==============

def get_directory(config):
    """Build the directory selected by ``DONOR_BACKEND`` in a Flask config mapping"""
    backend = (config.get('DONOR_BACKEND') or 'local').lower()
    if backend == 'dynamodb':
        return DynamoDirectory(
            table_name=config.get('DONOR_TABLE_NAME') or DEFAULT_TABLE_NAME,
            region_name=config.get('AWS_REGION') or 'us-east-1',
            endpoint_url=config.get('DYNAMODB_ENDPOINT_URL') or None,
            index_name=config.get('DONOR_INDEX_NAME') or None,
        )
    if backend == 'local':
        return LocalDirectory(config.get('DATA_DIR'))
    raise ValueError(f'Unknown DONOR_BACKEND: {backend!r}')


# ============== SAMPLE DATA ==============

SAMPLE_DONORS = [
    RegistrationForm(
        name='Ravi',
        contact_number='+910000000000',
        blood_type='A+',
        district='Chennai',
        last_donation_date='2025-09-01T12:00:00.000Z',
    ),
]


def seed_sample_donors(directory):
    """Add the sample donors; returns their new identifiers"""
    created = []
    for form in SAMPLE_DONORS:
        donor = validate_registration(form)
        created.append(directory.create(to_document(donor)))
    return created
