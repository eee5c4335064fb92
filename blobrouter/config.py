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

'''blob router config module.

Config objects are plain nested dictionaries. Each module that needs
options publishes a DEFAULT_CONFIG dictionary, and tools build their
config by merging those defaults with JSON config files and command
line options, later sources winning. Merges never modify the inputs,
so module defaults can be shared safely.'''

import argparse
import copy
import glob
import inspect
import json
import os.path


class ConfigError(Exception):
    '''Exception raised when a config is not valid.'''

    pass


def update(*configs):
    '''Deep merge any number of config dictionaries, returning a new one.'''
    merged = {}
    for config in configs:
        merged = _merge(merged, config)
    return merged


def _merge(base, config):
    '''Merge config on top of a copy of base.'''
    merged = copy.deepcopy(base)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def update_option(config, option, value):
    '''Set a single dotted option (ex. blobrouter.client.cluster) in a copy
    of config. String values are parsed with parse_value.'''
    keys = option.split('.')
    value = parse_value(value)
    config = update(config)
    current = config
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value
    return config


def parse_value(value):
    '''Parse a string value as JSON if possible, otherwise keep the string.
    Non-string values are returned unchanged.'''
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def load(config, files=None, dirs=None, args=None):
    '''Load config files, config directories, and command line options on
    top of the given config. This returns the new config and a list of
    any remaining positional arguments.'''
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument('-c', '--config', action='append', default=[],
        help=_('Load the given config file, may be given multiple times'))
    parser.add_argument('-n', '--no-default-config', action='store_true',
        help=_('Do not load the default config files and directories'))
    parser.add_argument('-o', '--option', action='append', default=[],
        help=_('Set a dotted option, ex: blobrouter.client.cluster=0'))
    options, remaining = parser.parse_known_args(args)

    paths = []
    if not options.no_default_config:
        paths.extend(files or [])
        for path in dirs or []:
            path = os.path.expanduser(path)
            paths.extend(sorted(glob.glob(os.path.join(path, '*.conf'))))
    for path in paths:
        path = os.path.expanduser(path)
        if os.path.isfile(path):
            config = update(config, _load_file(path))
    for path in options.config:
        if not os.path.isfile(path):
            raise ConfigError(_('Config file not found: %s') % path)
        config = update(config, _load_file(path))

    for option in options.option:
        if '=' not in option:
            raise ConfigError(_('Option must be key=value: %s') % option)
        option, value = option.split('=', 1)
        config = update_option(config, option, value)
    return config, remaining


def _load_file(path):
    '''Load a single JSON config file.'''
    with open(path) as config_file:
        try:
            config = json.load(config_file)
        except ValueError as exception:
            raise ConfigError(_('Invalid config file: %s (%s)') %
                (path, exception))
    if not isinstance(config, dict):
        raise ConfigError(_('Config file must contain an object: %s') % path)
    return config


def method_help(method):
    '''Make a one line usage string for a method from its signature and
    the first line of its docstring.'''
    parameters = []
    for name, parameter in inspect.signature(method).parameters.items():
        if parameter.default is inspect.Parameter.empty:
            parameters.append(name)
        else:
            parameters.append('%s=%s' % (name, parameter.default))
    doc = (inspect.getdoc(method) or '').split('\n')[0]
    return '%s %s\n    %s' % (method.__name__, ' '.join(parameters), doc)
