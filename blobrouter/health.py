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

'''blob router health module.

Replicas are never marked healthy again explicitly. A failure is stamped
with the time it happened, and the replica counts as recently failed
until *retry* seconds have passed since the last stamp. One tracker is
shared by every request made through a client, so all access goes
through a lock.'''

import threading
import time


class ReplicaHealth(object):
    '''Track the last failure time of each replica.'''

    def __init__(self, retry, clock=time.time):
        self.retry = retry
        self._clock = clock
        self._last_failed = {}
        self._lock = threading.Lock()

    def failed(self, replica, when=None):
        '''Record a failure for a replica.'''
        if when is None:
            when = self._clock()
        with self._lock:
            self._last_failed[replica] = when

    def last_failed(self, replica):
        '''Get the last failure time for a replica, or None if it never
        failed.'''
        with self._lock:
            return self._last_failed.get(replica)

    def partition(self, replicas, now=None):
        '''Split replicas into a list of healthy replicas (in the given
        order) and a list of recently failed replicas, the longest failed
        first.'''
        if now is None:
            now = self._clock()
        healthy = []
        failed = []
        with self._lock:
            for replica in replicas:
                last_failed = self._last_failed.get(replica)
                if last_failed is None or now - last_failed >= self.retry:
                    healthy.append(replica)
                else:
                    failed.append((last_failed, replica))
        failed.sort()
        return healthy, [replica for _last_failed, replica in failed]

    def status(self, now=None):
        '''Get seconds since failure for replicas still inside the retry
        window.'''
        if now is None:
            now = self._clock()
        with self._lock:
            return dict((replica, now - last_failed)
                for replica, last_failed in self._last_failed.items()
                if now - last_failed < self.retry)
