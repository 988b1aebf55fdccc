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

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import bitmath

from elastic.operator.constants import SECURITY_INDEX
from elastic.operator.exceptions import GatewayError
from elastic.operator.gateway import SETTING_READ_ONLY_ALLOW_DELETE, Watermark
from elastic.operator.utils.formatting import parse_byte_quantity


@dataclass
class Threshold:
    """
    A disk watermark, either as an absolute quantity or as a percentage.
    """

    absolute: Optional[bitmath.Byte] = None
    percent: Optional[float] = None

    @classmethod
    def from_watermark(cls, value: Watermark) -> "Threshold":
        if isinstance(value, float):
            return cls(percent=value)
        if isinstance(value, str):
            return cls(absolute=parse_byte_quantity(value))
        return cls()


@dataclass
class WatermarkThresholds:
    low: Threshold
    high: Threshold
    flood: Threshold


def exceeds_watermark(
    usage: str,
    percent: float,
    absolute: Optional[bitmath.Byte],
    pct: Optional[float],
) -> bool:
    """
    Check whether the disk usage of a node exceeds a watermark.

    :param usage: The used bytes as reported for the node. An empty value
        means the usage is unknown.
    :param percent: The used disk space in percent. Negative values mean the
        usage is unknown.
    :param absolute: The watermark as absolute quantity, if set.
    :param pct: The watermark as percentage, if set.
    """
    if not usage or percent < 0:
        return False
    quantity = parse_byte_quantity(usage)
    if quantity is None:
        return False
    if absolute is not None and quantity > absolute:
        return True
    if pct is not None and percent > pct:
        return True
    return False


async def refresh_thresholds(gateway) -> WatermarkThresholds:
    low, high, flood = await gateway.get_disk_watermarks()
    return WatermarkThresholds(
        low=Threshold.from_watermark(low),
        high=Threshold.from_watermark(high),
        flood=Threshold.from_watermark(flood),
    )


async def is_below_flood_watermark(
    gateway,
    node_names: Iterable[str],
    flood: Threshold,
    logger: logging.Logger,
) -> bool:
    for name in node_names:
        try:
            usage, percent = await gateway.get_node_disk_usage(name)
        except GatewayError as e:
            logger.info("Unable to get disk usage of node '%s': %s", name, e)
            continue
        if exceeds_watermark(usage, percent, flood.absolute, flood.percent):
            return False
    return True


async def is_index_blocked(gateway, index: str, logger: logging.Logger) -> bool:
    try:
        settings = await gateway.get_index_settings(index)
    except GatewayError as e:
        logger.error("Failed to get settings of index '%s': %s", index, e)
        return False
    return str(settings.get(SETTING_READ_ONLY_ALLOW_DELETE)).lower() == "true"


async def is_flood_stage_cleared(
    gateway, node_names: Iterable[str], logger: logging.Logger
) -> bool:
    """
    Check whether no node exceeds the flood stage watermark. Without disk
    threshold checks Elasticsearch enforces no watermark at all.
    """
    try:
        enabled = await gateway.get_threshold_enabled()
    except GatewayError as e:
        logger.info("Unable to check if the disk threshold is enabled: %s", e)
        enabled = True
    if not enabled:
        return True

    try:
        thresholds = await refresh_thresholds(gateway)
    except GatewayError as e:
        logger.error("Unable to read the disk watermarks: %s", e)
        return False
    return await is_below_flood_watermark(
        gateway, node_names, thresholds.flood, logger
    )


async def check_watermark_and_unblock_indices(
    gateway, node_names: Iterable[str], logger: logging.Logger
) -> None:
    """
    Lift the read-only block Elasticsearch puts on indices once the flood
    stage watermark was exceeded, as soon as no node exceeds it anymore.

    Failures are logged and never raised.
    """
    if not await is_flood_stage_cleared(gateway, node_names, logger):
        return

    try:
        indices = await gateway.list_all_indices()
    except GatewayError as e:
        logger.error("Failed to fetch all indices: %s", e)
        return

    for index in indices:
        name = index.get("index")
        if not name or name == SECURITY_INDEX:
            continue
        if not await is_index_blocked(gateway, name, logger):
            continue
        logger.info("Removing the read-only block of index '%s'", name)
        try:
            await gateway.update_index_settings(
                name, {SETTING_READ_ONLY_ALLOW_DELETE: None}
            )
        except GatewayError as e:
            logger.error("Couldn't update the settings of index '%s': %s", name, e)
