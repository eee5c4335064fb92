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

'''Tests for blob router health module.'''

import threading
import unittest

import blobrouter.health


class TestReplicaHealth(unittest.TestCase):

    def setUp(self):
        self.now = 100.0
        self.health = blobrouter.health.ReplicaHealth(10, lambda: self.now)

    def test_never_failed(self):
        self.assertEqual(None, self.health.last_failed('a'))
        self.assertEqual((['a', 'b'], []),
            self.health.partition(['a', 'b']))
        self.assertEqual({}, self.health.status())

    def test_failed(self):
        self.health.failed('a')
        self.assertEqual(100.0, self.health.last_failed('a'))
        self.assertEqual((['b'], ['a']), self.health.partition(['a', 'b']))
        self.assertEqual({'a': 0}, self.health.status())
        self.health.failed('a', 95.0)
        self.assertEqual(95.0, self.health.last_failed('a'))
        self.assertEqual({'a': 5.0}, self.health.status())

    def test_retry_window(self):
        self.health.failed('a')
        self.now = 109.9
        self.assertEqual(([], ['a']), self.health.partition(['a']))
        self.now = 110.0
        self.assertEqual((['a'], []), self.health.partition(['a']))
        self.assertEqual({}, self.health.status())
        self.assertEqual(100.0, self.health.last_failed('a'))

    def test_failed_order(self):
        self.health.failed('c', 97.0)
        self.health.failed('a', 99.0)
        self.health.failed('b', 98.0)
        self.assertEqual((['d'], ['c', 'b', 'a']),
            self.health.partition(['a', 'b', 'c', 'd']))
        self.assertEqual((['c', 'd'], ['b', 'a']),
            self.health.partition(['a', 'b', 'c', 'd'], now=107.5))

    def test_healthy_order(self):
        self.assertEqual((['c', 'a', 'b'], []),
            self.health.partition(['c', 'a', 'b']))

    def test_threads(self):
        def fail(replica):
            for count in range(100):
                self.health.failed(replica, 50.0 + count)
        threads = [threading.Thread(target=fail, args=(str(replica),))
            for replica in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        for replica in range(10):
            self.assertEqual(149.0, self.health.last_failed(str(replica)))
