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

'''blob router package.

Purpose
=======

The blob router is the smart client side of a replicated blob storage
service. It stores nothing itself. Given a blob name, it decides which
bucket in each cluster owns the blob, which replicas host that bucket,
and the order in which those replicas should be tried. There is no
proxy node or lookup service in between; every client computes the
same answer from the same configuration.

Design
======

Storage is split into three nested components: **clusters**, **buckets**,
and **replicas**.

* A **cluster** is a full copy of the blob set, usually one per data
  center.
* A **bucket** is a fraction of the blobs within a cluster.
* A **replica** is a single storage node within a bucket. Every replica
  in a bucket is expected to hold the same content.

A blob name maps to exactly one bucket per cluster. The mapping is done
either by hashing the name against the bucket write weights, or, when
the name is *encoded*, by reading the bucket numbers straight out of
the name prefix. Encoded names look like ``00001_name``: a version
digit, then two base 62 digits per cluster, then an underscore and the
original name. Encoded names keep resolving to the same buckets after
buckets are added or reweighted; plain names do not.

Replicas that fail are remembered for **replica_retry** seconds and
moved to the end of the list of replicas to try. They are never removed
entirely, so a request will still reach them if nothing else answers.

Configuration
=============

The **clusters** key describes the topology. Order is important: the
index of a cluster in the outer list is its id, and the index of a
bucket within its cluster is the bucket id::

    "clusters": [
        [
            {"replicas": ["blob_000", "blob_001"], "write_weight": 1},
            {"replicas": ["blob_010", "blob_011"], "write_weight": 1}
        ],
        [
            {"replicas": ["blob_100", "blob_101"], "write_weight": 1},
            {"replicas": ["blob_110", "blob_111"], "write_weight": 1}
        ]
    ]

The **replicas** key holds the per node settings. The **read_weight**
sets the share of reads for a bucket that go to that replica; a weight
of 0 keeps reads away unless the replica is the only one left::

    "replicas": {
        "blob_000": {"ip": "10.0.0.100", "port": 10000, "read_weight": 1},
        "blob_001": {"ip": "10.0.0.101", "port": 10000, "read_weight": 1},
        ...
    }

Setting **cluster** restricts the client to the replicas of one cluster,
which is what a client running inside a data center normally wants.

Usage
=====

See the *client* module for the blob and admin operations.'''

# Install the _(...) function as a built-in so all other modules don't need to.
import gettext
gettext.install('blobrouter')

__version__ = '0.1.0'

import random
import time


class NotFound(Exception):
    '''Exception raised when no replica has a blob.'''

    pass


class InvalidRequest(Exception):
    '''Exception raised when an invalid request is made.'''

    pass


class RequestError(Exception):
    '''Exception raised when an error is encountered while make a request.'''

    pass


class ReplicasExhausted(RequestError):
    '''Exception raised when every replica tried for a request failed. The
    detail of the last failure is kept in *last_error*.'''

    def __init__(self, message, last_error=None):
        super(ReplicasExhausted, self).__init__(message)
        self.last_error = last_error


def unique_id():
    '''Make a timestamp id for modified times. Whole seconds are kept in
    the high 32 bits so ids sort by time and can be compared with epoch
    ranges shifted by 32.'''
    now = time.time()
    micro = int((now - int(now)) * 1000000)
    return (int(now) << 32) + (micro << 12) + random.randrange(4096)
