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

'''blob router client module.

This module routes requests for the blob service. The client does not
store anything; for every request it works out which bucket of each
cluster owns the blob name, which replicas serve those buckets, and
tries the replicas one at a time until one answers.

* **Reads** are spread over the replicas by their **read_weight**.
* **Writes** go to one replica, chosen uniformly. The replica that
  accepts a write is responsible for replicating it to its peers and
  to the other clusters, so the client never writes more than once.
* A replica that errors is tried last for **replica_retry** seconds.
  A 404 is an answer, not an error, and does not count against the
  replica.

A single client instance is meant to be shared by many threads. The
only state shared between requests is the replica health tracker and
the cache of idle connections.'''

import bisect
import http.client
import itertools
import json
import os
import os.path
import random
import stat
import sys
import time

import blobrouter
import blobrouter.config
import blobrouter.event
import blobrouter.health
import blobrouter.log

DEFAULT_CONFIG = {
    'blobrouter': {
        'client': {
            'cluster': None,
            'clusters': [],
            'encode_name': True,
            'log_level': 'NOTSET',
            'replica_cached_connections': 10,
            'replica_retry': 10,
            'replicas': {},
            'request_timeout': 5,
            'ttl': None}}}

REQUIRED_OPTIONS = ['clusters', 'encode_name', 'replica_retry', 'replicas',
    'ttl']

DEFAULT_CONFIG_FILES = [
    '/etc/blobrouter.conf',
    '~/.blobrouter.conf']

DEFAULT_CONFIG_DIRS = [
    '/etc/blobrouter.d',
    '~/.blobrouter.d']


class Client(object):
    '''This class handles all blob service requests. On initialization,
    the client checks the given config to ensure the topology is sane and
    builds the weighted bucket tables used to hash names. A client that
    fails any check raises ConfigError and is never usable.

    Internally, each request is translated into an event (represented
    by classes in the event module) that carries the request through
    bucket resolution, replica selection, and the HTTP requests. A
    *health* tracker can be passed in to share replica failure state
    between clients.'''

    def __init__(self, config, health=None):
        try:
            client_config = config['blobrouter']['client']
        except (KeyError, TypeError):
            raise blobrouter.config.ConfigError(
                _('No blobrouter.client config given'))
        for option in REQUIRED_OPTIONS:
            if option not in client_config:
                raise blobrouter.config.ConfigError(
                    _('Option not configured: %s') % option)
        self.root_config = config
        self.config = blobrouter.config.update(
            DEFAULT_CONFIG['blobrouter']['client'], client_config)
        self.log = blobrouter.log.get_log('blobrouter_client',
            self.config['log_level'])
        self.cluster = None
        self._check_config()
        self.weighted_clusters = self._make_weighted_clusters()
        if health is None:
            health = blobrouter.health.ReplicaHealth(
                self.config['replica_retry'])
        self.health = health
        self._connections = dict((replica, [])
            for replica in self.config['replicas'])

    def _check_config(self):
        '''Check the config for the clusters, replicas, and cluster
        options.'''
        if not isinstance(self.config['clusters'], list) or \
                len(self.config['clusters']) == 0:
            raise blobrouter.config.ConfigError(_('No clusters configured'))
        if not isinstance(self.config['replicas'], dict) or \
                len(self.config['replicas']) == 0:
            raise blobrouter.config.ConfigError(_('No replicas configured'))
        seen_replicas = set()
        for cluster, buckets in enumerate(self.config['clusters']):
            if not isinstance(buckets, list) or len(buckets) == 0:
                raise blobrouter.config.ConfigError(
                    _('No buckets configured for cluster: %d') % cluster)
            if len(buckets) > blobrouter.event.MAX_BUCKETS:
                raise blobrouter.config.ConfigError(
                    _('Too many buckets for cluster: %d') % cluster)
            for bucket, bucket_info in enumerate(buckets):
                self._check_bucket(cluster, bucket, bucket_info,
                    seen_replicas)
            if sum(bucket_info['write_weight'] for bucket_info in buckets) \
                    == 0:
                raise blobrouter.config.ConfigError(
                    _('No write_weight for any bucket in cluster: %d') %
                    cluster)

        cluster = self.config['cluster']
        if cluster is None:
            return
        if not self._is_count(cluster):
            raise blobrouter.config.ConfigError(
                _('Cluster option must be an integer: %s') % cluster)
        if cluster >= len(self.config['clusters']):
            raise blobrouter.config.ConfigError(
                _('Cluster option out of range: %d %d') %
                (cluster, len(self.config['clusters'])))
        self.cluster = cluster

    def _check_bucket(self, cluster, bucket, bucket_info, seen_replicas):
        '''Check to make sure a bucket is configured correctly.'''
        if not isinstance(bucket_info, dict):
            raise blobrouter.config.ConfigError(
                _('Bucket must be a dictionary for cluster/bucket: %d/%d') %
                (cluster, bucket))
        for option in ['replicas', 'write_weight']:
            if option not in bucket_info:
                raise blobrouter.config.ConfigError(
                    _('No %s for cluster/bucket: %d/%d') %
                    (option, cluster, bucket))
        if not self._is_count(bucket_info['write_weight']):
            raise blobrouter.config.ConfigError(
                _('Invalid write_weight for cluster/bucket: %d/%d') %
                (cluster, bucket))
        if not isinstance(bucket_info['replicas'], list) or \
                len(bucket_info['replicas']) == 0:
            raise blobrouter.config.ConfigError(
                _('No replicas listed for cluster/bucket: %d/%d') %
                (cluster, bucket))
        for replica in bucket_info['replicas']:
            if not isinstance(replica, str):
                raise blobrouter.config.ConfigError(
                    _('Replica id must be a string for cluster/bucket: '
                    '%d/%d') % (cluster, bucket))
            if replica in seen_replicas:
                raise blobrouter.config.ConfigError(
                    _('Replica can only be in one bucket: %s') % replica)
            if replica not in self.config['replicas']:
                raise blobrouter.config.ConfigError(
                    _('Replica in bucket but not defined: %s') % replica)
            replica_info = self.config['replicas'][replica]
            if not isinstance(replica_info, dict):
                raise blobrouter.config.ConfigError(
                    _('Replica must be a dictionary: %s') % replica)
            for option in ['ip', 'port', 'read_weight']:
                if option not in replica_info:
                    raise blobrouter.config.ConfigError(
                        _('No %s for replica: %s') % (option, replica))
            if not self._is_count(replica_info['read_weight']):
                raise blobrouter.config.ConfigError(
                    _('Invalid read_weight for replica: %s') % replica)
            seen_replicas.add(replica)

    @staticmethod
    def _is_count(value):
        '''Check for a non-negative integer, which bool is not.'''
        return isinstance(value, int) and not isinstance(value, bool) and \
            value >= 0

    def _make_weighted_clusters(self):
        '''Make a list for each cluster where each bucket appears as many
        times as its write weight. A name hash modulo the list length then
        picks buckets in proportion to their weights. These are built once
        at startup so all threads see the same lists.'''
        weighted_clusters = []
        for buckets in self.config['clusters']:
            weighted_buckets = []
            for bucket, bucket_info in enumerate(buckets):
                weighted_buckets += [bucket] * bucket_info['write_weight']
            weighted_clusters.append(weighted_buckets)
        return weighted_clusters

    def stop(self):
        '''Close any cached connections.'''
        for connections in self._connections.values():
            while len(connections) > 0:
                connections.pop().close()

    def buckets(self, name, encoded=False):
        '''Get the buckets for the given name, keyed by cluster.'''
        name = self._check_name(name)
        event = blobrouter.event.Put(self, name, None, encoded)
        return dict(event.buckets())

    def delete(self, name, ttl=0, deleted=None, modified_deleted=None,
            replicate='all', encoded=None):
        '''Request to eventually delete a specific blob from the blob
        service at a specific time. A delete marks a blob as being
        acceptable for purge after a certain point in time; the blob is
        removed on the next purge after that.

        Delete can be called with either a **ttl** or a **deleted** time:

        * A **ttl** is a relative number of seconds from now, and can be
          positive or negative.
        * A **deleted** time is a unix epoch timestamp, and wins over a
          ttl when both are given.

        By default a delete submits a TTL of 0, meaning "expire this as
        soon as possible." Every delete request is tagged with a unique
        timestamp, and replicas keep the most recent one. A delete that
        arrives after a later stamped request has no effect.

        This returns a dictionary of the current metadata for the blob
        from the replica that handled the request.'''
        name = self._check_name(name)
        event = blobrouter.event.Delete(self, name, replicate, encoded)
        event.deleted = self._make_deleted(ttl, deleted)
        event.modified_deleted = modified_deleted or blobrouter.unique_id()
        return self._forward(event)

    def get(self, name, response='data', encoded=None):
        '''Get the blob data (if response='data') or blob info (if
        response='info') for the given name from the blob service. Data
        is returned as bytes, info as a dictionary.'''
        name = self._check_name(name)
        if response not in ['data', 'info']:
            raise blobrouter.InvalidRequest(
                _('Unknown response option: %s') % response)
        event = blobrouter.event.Get(self, name, response, encoded)
        return self._forward(event)

    def name(self, name, encoded=False):
        '''Get the blob name that will be used for a given name. This
        returns an encoded name when encode_name is true in the config,
        otherwise it returns what was given. A name passed with
        encoded=True is checked and returned as is.'''
        name = self._check_name(name)
        event = blobrouter.event.Put(self, name, None, encoded)
        if encoded:
            event.buckets()
        return event.name

    def put(self, name, data, ttl=None, modified=None, deleted=None,
            modified_deleted=None, replicate='all', encoded=False):
        '''Put a blob into the blob service. The ttl and deleted parameters
        behave the same as with delete requests, so see the delete method
        for details. Every put request is tagged with a unique timestamp
        for both the data and deleted time, and the most recent one for
        each is kept. This makes it possible for a put request to have
        no effect if a later stamped request has already completed.

        The data can be bytes, an ASCII str, or a file-like object. Files
        are streamed from their current position.

        Puts go to a single replica, which replicates the blob to all
        peers and at least one replica per cluster that is also
        responsible for it (unless replicate says otherwise).'''
        name = self._check_name(name)
        data = self._check_data(data)
        event = blobrouter.event.Put(self, name, replicate, encoded)
        event.data = data
        if not isinstance(data, bytes):
            event.data_offset = data.tell()
        event.modified = modified or blobrouter.unique_id()
        event.deleted = self._make_deleted(ttl, deleted)
        event.modified_deleted = modified_deleted or event.modified
        return self._forward(event)

    def replicas(self, name, encoded=False):
        '''Get the sorted list of replicas for the given name.'''
        name = self._check_name(name)
        event = blobrouter.event.Put(self, name, None, encoded)
        return sorted(event.replicas())

    @staticmethod
    def _check_name(name):
        '''Make sure the name is valid.'''
        if isinstance(name, bytes):
            try:
                name = name.decode('utf-8')
            except UnicodeError:
                raise blobrouter.InvalidRequest(_('Name must be UTF-8 safe'))
        if not isinstance(name, str):
            raise blobrouter.InvalidRequest(_('Name must be a string'))
        if name == '':
            raise blobrouter.InvalidRequest(_('Name cannot be empty'))
        if name[0] == '_':
            raise blobrouter.InvalidRequest(_('Name cannot start with a _'))
        try:
            name.encode('utf-8')
        except UnicodeError:
            raise blobrouter.InvalidRequest(_('Name must be UTF-8 safe'))
        return name

    @staticmethod
    def _check_data(data):
        '''Make sure data is something we can send. Regular files are
        streamed, anything else with a read method is read into memory.'''
        if isinstance(data, str):
            try:
                data = data.encode('ascii')
            except UnicodeError:
                raise blobrouter.InvalidRequest(
                    _('Unicode data values must be encoded first'))
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        if not hasattr(data, 'read'):
            raise blobrouter.InvalidRequest(_('Invalid data object: %s') %
                type(data))
        try:
            regular = stat.S_ISREG(os.fstat(data.fileno()).st_mode)
        except (AttributeError, OSError, ValueError):
            regular = False
        try:
            if not regular:
                return Client._check_data(data.read())
            if not data.readable():
                raise blobrouter.InvalidRequest(_('Data file not readable'))
            data.tell()
        except (OSError, ValueError) as exception:
            raise blobrouter.InvalidRequest(_('Data not readable: %s') %
                exception)
        return data

    def _make_deleted(self, ttl, deleted):
        '''Make a deleted time from a ttl if needed.'''
        if deleted is not None:
            return deleted
        if ttl is None:
            ttl = self.config['ttl']
            if ttl is None:
                return 0
        return int(time.time()) + ttl

    def buffer(self, replica):
        '''Ask a replica to buffer any pending replication events right
        away instead of waiting for its next buffer interval.'''
        event = blobrouter.event.Admin(self, 'buffer', replica)
        return self._request(replica, event)

    def list(self, replica, modified_start=None, modified_stop=None,
            checksum=True, checksum_modulo=None):
        '''Get a list of blobs on a replica, or checksums of the list.'''
        event = blobrouter.event.List(self, replica)
        event.modified_start = modified_start
        event.modified_stop = modified_stop
        event.checksum = checksum
        event.checksum_modulo = checksum_modulo
        return self._request(replica, event)

    def purge(self, replica):
        '''Ask a replica to purge any blobs that have expired now instead
        of waiting for its next purge interval. The most practical use is
        a delete followed by a purge on the replicas for that blob.'''
        event = blobrouter.event.Admin(self, 'purge', replica)
        return self._request(replica, event)

    def status(self, replica):
        '''Get status information for the given replica.'''
        event = blobrouter.event.Admin(self, 'status', replica)
        return self._request(replica, event)

    def sync(self, replica, source=None, modified_start=None,
            modified_stop=None):
        '''Ask a replica to sync with its peers, or with the comma
        separated list of replicas in source.'''
        event = blobrouter.event.Sync(self, replica)
        event.source = source
        event.modified_start = modified_start
        event.modified_stop = modified_stop
        return self._request(replica, event)

    def _forward(self, event):
        '''Forward a blob event on to a replica that can handle it. Replicas
        are tried in order until one succeeds. If every replica answers
        with a 404, or there is no replica to ask, the blob is not found.
        Otherwise the last error is raised.'''
        last_error = None
        for replica in self._get_best_replica_list(event):
            try:
                return self._request(replica, event)
            except blobrouter.NotFound:
                continue
            except blobrouter.RequestError as exception:
                last_error = exception
        if last_error is None:
            raise blobrouter.NotFound(_('Blob not found on any replicas: %s') %
                event.name)
        raise blobrouter.ReplicasExhausted(
            _('Request failed to all replicas: %s') % last_error, last_error)

    def _get_best_replica_list(self, event):
        '''Get the best list of replicas to try for a request. This puts
        recently failed replicas at the end of the list, the longest
        failed first, and orders the rest by weighted random draws to
        spread load. Healthy replicas with no weight are left out.'''
        healthy, failed = self.health.partition(sorted(event.replicas()))
        weights = []
        for replica in healthy:
            if event.method == 'get':
                weight = self.config['replicas'][replica]['read_weight']
            else:
                weight = 1
            if weight > 0:
                weights.append((replica, weight))
        return self._weighted_order(weights) + failed

    @staticmethod
    def _weighted_order(weights):
        '''Order a list of (item, weight) pairs by drawing one at a time
        without replacement, each draw in proportion to the weights left.'''
        weights = list(weights)
        ordered = []
        while len(weights) > 0:
            cumulative = list(itertools.accumulate(
                weight for _item, weight in weights))
            number = random.randrange(cumulative[-1])
            item, _weight = weights.pop(bisect.bisect_right(cumulative,
                number))
            ordered.append(item)
        return ordered

    def _request(self, replica, event):
        '''Send a HTTP request to the given replica. A 404 raises NotFound
        and leaves the replica health alone, any other failure marks the
        replica as failed and raises RequestError.'''
        connection = None
        try:
            cached = True
            while True:
                headers = {}
                data = self._request_data(event, headers)
                connection, cached = self._get_connection(replica,
                    event.timeout, cached)
                try:
                    connection.request(event.http_method, event.url, data,
                        headers)
                    response = connection.getresponse()
                except (http.client.HTTPException, OSError) as exception:
                    connection.close()
                    if not cached:
                        raise
                    cached = False
                    self.log.warning(
                        _('Cached replica request error: %s (%s %s)'),
                        replica, exception.__class__.__name__, exception)
                    continue
                break
            body = response.read()
            if 200 <= response.status < 300:
                body = self._parse_response(event, response, body)
                self._cache_connection(replica, connection)
                return body
            if response.status == 404:
                self._cache_connection(replica, connection)
                raise blobrouter.NotFound(_('Not found on replica: %s (%s)') %
                    (replica, event.name))
            detail = '%d %s' % (response.status,
                body.decode('utf-8', 'replace').strip())
        except (http.client.HTTPException, OSError, ValueError) as exception:
            detail = '%s %s' % (exception.__class__.__name__, exception)
        if connection is not None:
            connection.close()
        self.health.failed(replica)
        detail = _('Replica request error: %s (%s)') % (replica, detail)
        self.log.warning(detail)
        raise blobrouter.RequestError(detail)

    @staticmethod
    def _parse_response(event, response, body):
        '''Decode a JSON body unless the event wants the raw body.'''
        content_type = response.getheader('Content-Type') or ''
        content_type = content_type.split(';', 1)[0].strip()
        if event.parse_response and content_type == 'application/json':
            return json.loads(body.decode('utf-8'))
        return body

    def _get_connection(self, replica, timeout, cached=True):
        '''Get a connection object for a replica, using cache if we can.'''
        if cached:
            try:
                return self._connections[replica].pop(), True
            except IndexError:
                pass
        replica_details = self.config['replicas'][replica]
        connection = http.client.HTTPConnection(replica_details['ip'],
            replica_details['port'], timeout=timeout)
        return connection, False

    def _cache_connection(self, replica, connection):
        '''Save a connection for later use if there is room.'''
        connections = self._connections[replica]
        if len(connections) < self.config['replica_cached_connections']:
            connections.append(connection)
        else:
            connection.close()

    @staticmethod
    def _request_data(event, headers):
        '''Get a data object to use for the event request. Files are
        rewound here, before a connection is made.'''
        if event.data is None:
            return None
        if isinstance(event.data, bytes):
            headers['Content-Length'] = str(len(event.data))
            return event.data
        try:
            event.data.seek(event.data_offset)
            size = os.fstat(event.data.fileno()).st_size
        except (OSError, ValueError) as exception:
            raise blobrouter.InvalidRequest(_('Data not readable: %s') %
                exception)
        headers['Content-Length'] = str(max(0, size - event.data_offset))
        return event.data


def _main_setup(commands, args=None):
    '''Setup config and print help if needed for main function.'''
    config = blobrouter.config.update(DEFAULT_CONFIG,
        blobrouter.log.DEFAULT_CONFIG)
    try:
        config, args = blobrouter.config.load(config, DEFAULT_CONFIG_FILES,
            DEFAULT_CONFIG_DIRS, args)
        blobrouter.log.setup(config)
        client = Client(config)
    except (blobrouter.config.ConfigError, ValueError) as exception:
        print(_('Config error: %s') % exception)
        sys.exit(1)
    if len(args) == 0 or args[0] not in commands:
        print(_('Invalid command, please use one of:'))
        print()
        for command in commands:
            print(blobrouter.config.method_help(getattr(client, command)))
        print()
        client.stop()
        sys.exit(1)
    return args, client


def _main(args=None):
    '''Run the blob router tool.'''
    commands = ['buckets', 'delete', 'get', 'name', 'put', 'replicas',
        'buffer', 'list', 'purge', 'status', 'sync']
    args, client = _main_setup(commands, args)
    command = args.pop(0)
    method = getattr(client, command)
    method_args = []
    method_kwargs = {}
    files = []
    for arg in args:
        arg = arg.split('=', 1)
        if len(arg) == 1:
            if len(method_args) == 0 and command == 'put':
                method_args.append(os.path.basename(arg[0]))
                files.append(open(arg[0], 'rb'))
                method_args.append(files[-1])
            elif len(method_args) == 0:
                # Names and replica ids are always strings.
                method_args.append(arg[0])
            else:
                method_args.append(blobrouter.config.parse_value(arg[0]))
        else:
            method_kwargs[arg[0]] = blobrouter.config.parse_value(arg[1])
    try:
        response = method(*method_args, **method_kwargs)
        if isinstance(response, bytes):
            sys.stdout.buffer.write(response)
        else:
            print(json.dumps(response, indent=4, sort_keys=True))
    except (blobrouter.InvalidRequest, blobrouter.NotFound,
            blobrouter.RequestError) as exception:
        print(_('Request error: %s') % exception)
        sys.exit(1)
    finally:
        for data_file in files:
            data_file.close()
        client.stop()


if __name__ == '__main__':
    _main()
