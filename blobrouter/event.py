# Copyright 2013 craigslist
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

'''blob router event module.

Each client call creates one event to carry its name, parameters, and
the buckets and replicas resolved for it. Events are thrown away when
the call returns. This should only be used internally by the client
module.'''

import hashlib
import urllib.parse

import blobrouter
import blobrouter.anybase

NAME_BASE = 62
NAME_VERSION = 0
BUCKET_DIGITS = 2
MAX_BUCKETS = NAME_BASE ** BUCKET_DIGITS


def encode_name(buckets, name, version=NAME_VERSION):
    '''Prefix a name with a version digit and two digits for the bucket
    of each cluster, in cluster order.'''
    encoded = [blobrouter.anybase.encode(version, NAME_BASE)]
    for _cluster, bucket in sorted(buckets.items()):
        encoded.append(
            blobrouter.anybase.encode(bucket, NAME_BASE).zfill(BUCKET_DIGITS))
    return '%s_%s' % (''.join(encoded), name)


def decode_name(name, bucket_counts):
    '''Get the buckets and original name out of an encoded name. The
    bucket_counts list holds the number of buckets in each cluster and is
    used to bounds check the decoded buckets.'''
    prefix, separator, original = name.partition('_')
    if separator == '':
        raise blobrouter.InvalidRequest(_('Name is not encoded: %s') % name)
    try:
        version = blobrouter.anybase.decode(prefix[:1], NAME_BASE)
    except ValueError:
        version = None
    if version != NAME_VERSION:
        raise blobrouter.InvalidRequest(_('Name version not valid: %s') %
            name)
    encoded = prefix[1:]
    if encoded == '' or len(encoded) % BUCKET_DIGITS != 0:
        raise blobrouter.InvalidRequest(_('Name bucket list corrupt: %s') %
            name)
    encoded = [encoded[offset:offset + BUCKET_DIGITS]
        for offset in range(0, len(encoded), BUCKET_DIGITS)]
    if len(encoded) > len(bucket_counts):
        raise blobrouter.InvalidRequest(
            _('Name has more buckets than clusters: %s') % name)
    buckets = {}
    for cluster, bucket in enumerate(encoded):
        try:
            bucket = blobrouter.anybase.decode(bucket, NAME_BASE)
        except ValueError:
            raise blobrouter.InvalidRequest(
                _('Name bucket list corrupt: %s') % name)
        if bucket >= bucket_counts[cluster]:
            raise blobrouter.InvalidRequest(
                _('Invalid bucket in name: %d %s') % (bucket, name))
        buckets[cluster] = bucket
    return buckets, original


def encoded_hint(encoded):
    '''Make an encoded hint a bool, keeping None for no hint.'''
    if encoded is None:
        return None
    return bool(encoded)


class Event(object):
    '''Base class for various events used in the client.'''

    params = []

    def __init__(self, client, method, name, http_method=None):
        self._client = client
        self.method = method
        self.name = name
        self.timeout = client.config['request_timeout']
        self.http_method = http_method or method.upper()
        self.parse_response = True
        self.data = None
        self.data_offset = 0
        self.modified = None
        self.deleted = None
        self.modified_deleted = None
        self.encoded = None
        self._buckets = None
        self._replicas = None

    @property
    def url(self):
        '''Make a URL for this event.'''
        url = '/%s' % urllib.parse.quote(self.name)
        query = []
        for param in self.params:
            value = getattr(self, param)
            if value is None:
                continue
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            query.append((param, value))
        if len(query) > 0:
            url = '%s?%s' % (url, urllib.parse.urlencode(query))
        return url

    def buckets(self):
        '''Get the buckets for this event, keyed by cluster. Names are
        treated as encoded unless the event says otherwise.'''
        if self._buckets is None:
            if self.encoded is not False and \
                    self._client.config['encode_name']:
                self._buckets = self._get_encoded_buckets()
            else:
                self._buckets = self._get_buckets()
        return self._buckets

    def _get_buckets(self):
        '''Get buckets for a name by hashing it.'''
        name_hash = hashlib.md5(self.name.encode('utf-8')).hexdigest()
        name_hash = int(name_hash[:8], 16)
        buckets = {}
        for cluster, weighted_cluster in \
                enumerate(self._client.weighted_clusters):
            buckets[cluster] = weighted_cluster[name_hash %
                len(weighted_cluster)]
        return buckets

    def _get_encoded_buckets(self):
        '''Get buckets for an encoded name.'''
        bucket_counts = [len(buckets)
            for buckets in self._client.config['clusters']]
        buckets, _original = decode_name(self.name, bucket_counts)
        return buckets

    def replicas(self):
        '''Get the set of replicas for the buckets of this event. This
        ignores replicas in other clusters if a cluster is configured.'''
        if self._replicas is None:
            replicas = set()
            for cluster, bucket in sorted(self.buckets().items()):
                if self._client.cluster is not None and \
                        self._client.cluster != cluster:
                    continue
                bucket = self._client.config['clusters'][cluster][bucket]
                replicas.update(bucket['replicas'])
            self._replicas = replicas
        return self._replicas


class Get(Event):
    '''Event for tracking getting a blob.'''

    params = ['response']

    def __init__(self, client, name, response, encoded=None):
        super(Get, self).__init__(client, 'get', name)
        self.response = response
        self.encoded = encoded_hint(encoded)
        if response == 'data':
            self.parse_response = False


class Delete(Event):
    '''Event for tracking deleting a blob.'''

    params = ['deleted', 'modified_deleted', 'replicate']

    def __init__(self, client, name, replicate, encoded=None):
        super(Delete, self).__init__(client, 'delete', name)
        self.replicate = replicate
        self.encoded = encoded_hint(encoded)


class Put(Event):
    '''Event for tracking putting a blob. Names that are not encoded yet
    are encoded here when the client is configured to encode names, so
    the name sent to replicas always carries its buckets.'''

    params = ['modified', 'deleted', 'modified_deleted', 'replicate',
        'encoded']

    def __init__(self, client, name, replicate, encoded):
        super(Put, self).__init__(client, 'put', name)
        self.replicate = replicate
        self.encoded = encoded_hint(encoded)
        if self.encoded is False and client.config['encode_name']:
            self._encode_name()

    def _encode_name(self):
        '''Replace the name with one encoded with its buckets.'''
        self.name = encode_name(self.buckets(), self.name)
        self.encoded = True


class Admin(Event):
    '''Event for tracking admin requests sent directly to one replica.'''

    def __init__(self, client, method, replica):
        if replica is None:
            raise blobrouter.InvalidRequest(_('Must give replica'))
        elif replica not in client.config['replicas']:
            raise blobrouter.InvalidRequest(_('Unknown replica: %s') %
                replica)
        super(Admin, self).__init__(client, method,
            '_%s/%s' % (method, replica), 'GET')
        self.replica = replica


class List(Admin):
    '''Event for tracking list requests.'''

    params = ['modified_start', 'modified_stop', 'checksum', 'checksum_modulo']

    def __init__(self, client, replica):
        super(List, self).__init__(client, 'list', replica)
        self.modified_start = None
        self.modified_stop = None
        self.checksum = None
        self.checksum_modulo = None


class Sync(Admin):
    '''Event for tracking sync requests.'''

    params = ['source', 'modified_start', 'modified_stop']

    def __init__(self, client, replica):
        super(Sync, self).__init__(client, 'sync', replica)
        self.source = None
        self.modified_start = None
        self.modified_stop = None
