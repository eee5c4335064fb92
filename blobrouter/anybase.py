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

'''blob router anybase module.

Convert non-negative integers to and from strings in any base up to 62.
Digits are 0-9, then a-z, then A-Z, so base 16 output matches the usual
lowercase hex and base 62 output only uses characters that are safe in
URLs and file names.'''

import string

DIGITS = string.digits + string.ascii_lowercase + string.ascii_uppercase


def encode(number, base):
    '''Encode a non-negative integer as a string in the given base.'''
    _check_base(base)
    if number < 0:
        raise ValueError(_('Cannot encode negative number: %d') % number)
    if number == 0:
        return DIGITS[0]
    encoded = []
    while number > 0:
        number, digit = divmod(number, base)
        encoded.append(DIGITS[digit])
    return ''.join(reversed(encoded))


def decode(encoded, base):
    '''Decode a string in the given base back into an integer.'''
    _check_base(base)
    if encoded == '':
        raise ValueError(_('Cannot decode empty string'))
    number = 0
    for char in encoded:
        digit = DIGITS.find(char)
        if digit == -1 or digit >= base:
            raise ValueError(_('Invalid base %d digit: %s') % (base, char))
        number = number * base + digit
    return number


def _check_base(base):
    '''Make sure we have enough digits for the base.'''
    if base < 2 or base > len(DIGITS):
        raise ValueError(_('Base out of range: %d') % base)
