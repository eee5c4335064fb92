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

'''Tests for blob router package.'''

import gevent.monkey
gevent.monkey.patch_all()

import json
import unittest
import urllib.parse

import gevent.pywsgi

import blobrouter.client
import blobrouter.config

CONFIG = blobrouter.config.update(blobrouter.client.DEFAULT_CONFIG, {
    'blobrouter': {
        'client': {
            'cluster': 0,
            'clusters': [
                [
                    {'replicas': ['000', '001', '002'], 'write_weight': 1},
                    {'replicas': ['010', '011', '012'], 'write_weight': 1}
                ],
                [
                    {'replicas': ['100', '101', '102'], 'write_weight': 1},
                    {'replicas': ['110', '111', '112'], 'write_weight': 1},
                    {'replicas': ['120', '121', '122'], 'write_weight': 1}
                ]
            ],
            'replicas': {
                '000': {'ip': '127.0.0.1', 'port': 20000, 'read_weight': 1},
                '001': {'ip': '127.0.0.1', 'port': 20001, 'read_weight': 1},
                '002': {'ip': '127.0.0.1', 'port': 20002, 'read_weight': 1},
                '010': {'ip': '127.0.0.1', 'port': 20010, 'read_weight': 1},
                '011': {'ip': '127.0.0.1', 'port': 20011, 'read_weight': 1},
                '012': {'ip': '127.0.0.1', 'port': 20012, 'read_weight': 1},
                '100': {'ip': '127.0.0.1', 'port': 20100, 'read_weight': 1},
                '101': {'ip': '127.0.0.1', 'port': 20101, 'read_weight': 1},
                '102': {'ip': '127.0.0.1', 'port': 20102, 'read_weight': 1},
                '110': {'ip': '127.0.0.1', 'port': 20110, 'read_weight': 1},
                '111': {'ip': '127.0.0.1', 'port': 20111, 'read_weight': 1},
                '112': {'ip': '127.0.0.1', 'port': 20112, 'read_weight': 1},
                '120': {'ip': '127.0.0.1', 'port': 20120, 'read_weight': 1},
                '121': {'ip': '127.0.0.1', 'port': 20121, 'read_weight': 1},
                '122': {'ip': '127.0.0.1', 'port': 20122, 'read_weight': 1}},
            'request_timeout': 1}}})

ADMIN_COMMANDS = ['buffer', 'list', 'purge', 'status', 'sync']


class Replica(object):
    '''Storage node stand-in that keeps blobs in memory. It understands
    enough of the blob protocol for the client to talk to it, and records
    every request it sees. Setting *error* makes it answer everything
    with that HTTP status.'''

    def __init__(self, name, ip, port):
        self.name = name
        self.ip = ip
        self.port = port
        self.blobs = {}
        self.requests = []
        self.error = None
        self._server = None

    def start(self):
        '''Start serving on the replica address.'''
        self._server = gevent.pywsgi.WSGIServer((self.ip, self.port),
            self.app, log=None)
        self._server.start()

    def stop(self):
        '''Stop serving, dropping any open connections.'''
        if self._server is not None:
            self._server.stop(timeout=0)
            self._server = None

    def app(self, environ, start_response):
        '''Handle a single request.'''
        method = environ['REQUEST_METHOD']
        name = environ['PATH_INFO'].encode('latin-1').decode('utf-8')[1:]
        params = dict((key, values[0]) for key, values in
            urllib.parse.parse_qs(environ.get('QUERY_STRING', '')).items())
        self.requests.append((method, name, params))
        if self.error is not None:
            return self._respond(start_response, self.error, b'forced error')
        if name.startswith('_'):
            return self._admin(start_response, name[1:], params)
        if method == 'GET':
            blob = self.blobs.get(name)
            if blob is None or blob['data'] is None:
                return self._respond(start_response, 404, b'not found')
            if params.get('response') == 'info':
                return self._json(start_response, blob['info'])
            return self._respond(start_response, 200, blob['data'])
        if method == 'PUT':
            length = int(environ.get('CONTENT_LENGTH') or 0)
            data = environ['wsgi.input'].read(length)
            blob = self._blob(name)
            modified = int(params['modified'])
            if blob['info']['modified'] is None or \
                    modified > blob['info']['modified']:
                blob['data'] = data
                blob['info']['modified'] = modified
            self._update_deleted(blob, params)
            return self._json(start_response, blob['info'])
        if method == 'DELETE':
            blob = self._blob(name)
            self._update_deleted(blob, params)
            return self._json(start_response, blob['info'])
        return self._respond(start_response, 405, b'method not allowed')

    def _blob(self, name):
        '''Get or create a blob entry.'''
        if name not in self.blobs:
            self.blobs[name] = {
                'data': None,
                'info': {
                    'name': name,
                    'modified': None,
                    'deleted': 0,
                    'modified_deleted': None}}
        return self.blobs[name]

    @staticmethod
    def _update_deleted(blob, params):
        '''Keep the most recently stamped deleted time.'''
        modified_deleted = int(params['modified_deleted'])
        info = blob['info']
        if info['modified_deleted'] is None or \
                modified_deleted > info['modified_deleted']:
            info['deleted'] = int(params['deleted'])
            info['modified_deleted'] = modified_deleted

    def _admin(self, start_response, name, params):
        '''Answer an admin command with what was asked of it.'''
        parts = name.split('/', 1)
        if parts[0] not in ADMIN_COMMANDS:
            return self._respond(start_response, 404, b'not found')
        return self._json(start_response, {
            'command': parts[0],
            'replica': self.name,
            'target': parts[1] if len(parts) > 1 else None,
            'params': params})

    def _json(self, start_response, body):
        '''Send a JSON response.'''
        return self._respond(start_response, 200,
            json.dumps(body).encode('utf-8'), 'application/json')

    @staticmethod
    def _respond(start_response, status, body,
            content_type='application/octet-stream'):
        '''Send a response with the given status and body.'''
        reason = {200: 'OK', 404: 'Not Found', 405: 'Method Not Allowed'}
        start_response('%d %s' % (status, reason.get(status, 'Error')), [
            ('Content-Type', content_type),
            ('Content-Length', str(len(body)))])
        return [body]


class Base(unittest.TestCase):
    '''Base test class for blob services that handles test cluster setup.'''

    config = CONFIG

    def __init__(self, *args, **kwargs):
        super(Base, self).__init__(*args, **kwargs)
        self.servers = {}
        self.clients = []

    def setUp(self):
        '''Start a fake storage node for every configured replica.'''
        replicas = self.config['blobrouter']['client']['replicas']
        for name, value in replicas.items():
            server = Replica(name, value['ip'], value['port'])
            server.start()
            self.servers[name] = server

    def tearDown(self):
        for client in self.clients:
            client.stop()
        for name in list(self.servers):
            self.servers[name].stop()
            del self.servers[name]

    def client(self, config=None, **kwargs):
        '''Make a client that is stopped on tear down.'''
        client = blobrouter.client.Client(config or self.config, **kwargs)
        self.clients.append(client)
        return client

    def stored(self, name):
        '''Get the replicas that hold data for a name.'''
        return sorted(replica for replica, server in self.servers.items()
            if name in server.blobs and server.blobs[name]['data'] is not None)
