# CrateDB Kubernetes Operator
#
# Licensed to Crate.IO GmbH ("Crate") under one or more contributor
# license agreements.  See the NOTICE file distributed with this work for
# additional information regarding copyright ownership.  Crate licenses
# this file to you under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.  You may
# obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.  See the
# License for the specific language governing permissions and limitations
# under the License.
#
# However, if you have executed another commercial license agreement
# with Crate these terms will supersede the license and you may use the
# software solely pursuant to the terms of the relevant commercial agreement.

import base64
import functools
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

import bitmath


def encode_decode_wrapper(fn: Callable[[bytes], bytes], s: str) -> str:
    """
    Encode ``s`` to bytes, call ``fn`` with that and decode the result again.

    The function uses UTF-8 for encoding and decoding.

    :param fn: A function that should be called with the byte encoding and
        who's response should be decoded to string again.
    :param s: The string to encode, pass to ``fn``, and decode.
    """
    if s is None:
        return None
    return fn(s.encode("utf-8")).decode("utf-8")


#: Wrapper to base 64 decode a string and return a string.
b64decode = functools.partial(encode_decode_wrapper, base64.b64decode)
#: Wrapper to base 64 encode a string and return a string.
b64encode = functools.partial(encode_decode_wrapper, base64.b64encode)


def format_bitmath(value: bitmath.Byte) -> str:
    """
    Format a :class:`bitmath.Byte` such that it is safe to use with Kubernetes.

    Under the hood, the format ``{value}{unit}`` is used, but without the
    trailing ``B``. Additionally, the "best" unit is picked. For example,
    passing ``bitmath.GiB(0.25)`` would result in ``"256Mi"``.
    """
    return value.best_prefix().format("{value}{unit}")[:-1]


def convert_to_bytes(value: Union[str, int, float]) -> bitmath.Byte:
    """
    Converts sizes as used by Kubernetes and Elasticsearch, e.g. ``"256Gi"``,
    ``"500mb"`` or ``"1.5G"``, or plain numbers of bytes to
    :class:`bitmath.Byte`.

    Elasticsearch reports byte quantities with a lowercase unit, Kubernetes
    omits the trailing ``B``. Both spellings are interpreted as bytes.
    """
    if isinstance(value, (int, float)):
        return bitmath.Byte(value)
    return bitmath.parse_string_unsafe(value.strip()).to_Byte()


def parse_byte_quantity(value: Optional[str]) -> Optional[bitmath.Byte]:
    """
    Like :func:`convert_to_bytes` but returns ``None`` for empty or
    unparsable values.
    """
    if not value:
        return None
    try:
        return convert_to_bytes(value)
    except ValueError:
        return None


def parse_quantity(value: Union[str, int, float, None]) -> Optional[Decimal]:
    """
    Parse a Kubernetes resource quantity into a number of cores or bytes.

    Millicores (``"500m"``), plain and exponent notation (``"2"``,
    ``"1e3"``) and byte units (``"2Gi"``, ``"1G"``) are understood. Returns
    ``None`` for empty or unparsable values.

    >>> parse_quantity("1000m") == parse_quantity("1")
    True
    >>> parse_quantity("2048Mi") == parse_quantity("2Gi")
    True
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        if text.endswith("m"):
            return Decimal(text[:-1]) / 1000
        return Decimal(text)
    except InvalidOperation:
        pass
    try:
        return Decimal(str(convert_to_bytes(text).bytes))
    except ValueError:
        return None
