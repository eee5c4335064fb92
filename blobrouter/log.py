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

'''blob router log module.

Thin setup layer over the standard logging module so every tool in the
package configures logging from the same config section.'''

import logging

DEFAULT_CONFIG = {
    'blobrouter': {
        'log': {
            'file': None,
            'format': '%(asctime)s %(name)s %(levelname)s %(message)s',
            'level': 'WARNING'}}}


def get_log(name, level='NOTSET'):
    '''Get a named logger, setting a level if one is given. A level of
    NOTSET leaves the logger to inherit from the root logger.'''
    log = logging.getLogger(name)
    log.setLevel(_level(level))
    return log


def setup(config):
    '''Setup the root logger from config. Existing handlers installed by
    an earlier call are replaced.'''
    config = config['blobrouter']['log']
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, '_blobrouter', False):
            root.removeHandler(handler)
    if config['file'] is None:
        handler = logging.StreamHandler()
    else:
        handler = logging.FileHandler(config['file'])
    handler._blobrouter = True  # pylint: disable=W0212
    handler.setFormatter(logging.Formatter(config['format']))
    root.addHandler(handler)
    root.setLevel(_level(config['level']))
    return root


def _level(level):
    '''Convert a level name or number into a logging level.'''
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(_('Unknown log level: %s') % level)
    return value
