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

import re
from typing import Any, Dict, Optional, Tuple

from elastic.operator.constants import (
    MAX_MASTER_COUNT,
    ClusterConditionType,
    ConditionStatus,
    NodeRole,
    PodState,
    RedundancyPolicy,
)
from elastic.operator.exceptions import InvalidSpecError, InvalidTimeUnitError
from elastic.operator.request import ClusterRequest
from elastic.operator.topology import validate_uuids

REASON_INVALID_SETTINGS = "Invalid Settings"
REASON_INVALID_SPEC = "Invalid Spec"

MESSAGE_INVALID_MASTERS = (
    "Invalid master nodes count. Please ensure there are no more than "
    f"{MAX_MASTER_COUNT} total nodes with master roles"
)
MESSAGE_INVALID_DATA = (
    "No data nodes requested. Please ensure there is at least 1 node with data roles"
)
MESSAGE_INVALID_REDUNDANCY = (
    "Wrong RedundancyPolicy selected. Choose different RedundancyPolicy or add "
    "more nodes with data roles"
)
MESSAGE_INVALID_SCALE_DOWN = (
    "Data node scale down rate is too high based on minimum number of replicas "
    "for all indices"
)

TIME_UNIT_PATTERN = re.compile(r"^(\d+)([yMwdhHms])$")

MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
MILLIS_PER_WEEK = 7 * MILLIS_PER_DAY

MILLIS_PER_UNIT = {
    "w": MILLIS_PER_WEEK,
    "d": MILLIS_PER_DAY,
    "h": MILLIS_PER_HOUR,
    "H": MILLIS_PER_HOUR,
    "m": MILLIS_PER_MINUTE,
    "s": MILLIS_PER_SECOND,
}


def parse_time_unit(value: str) -> Tuple[int, str]:
    match = TIME_UNIT_PATTERN.match(value or "")
    if match is None:
        raise InvalidTimeUnitError(f"Invalid time unit '{value}'")
    return int(match.group(1)), match.group(2)


def crontab_schedule_for(value: str) -> str:
    """
    Convert a poll interval such as ``8m`` into the crontab schedule
    ``*/8 * * * *``. Only minutes are supported.
    """
    number, unit = parse_time_unit(value)
    if unit != "m":
        raise InvalidTimeUnitError(
            f"Crontab schedule for time unit '{unit}' is unsupported"
        )
    return f"*/{number} * * * *"


def millis_for_time_unit(value: str) -> int:
    number, unit = parse_time_unit(value)
    try:
        return number * MILLIS_PER_UNIT[unit]
    except KeyError:
        raise InvalidTimeUnitError(
            f"Conversion to millis for time unit '{unit}' is unsupported"
        ) from None


def validate_index_management(spec: Dict[str, Any]) -> Optional[str]:
    """
    Check the time units of all index management policies.

    :param spec: The cluster spec.
    :return: A message describing the first invalid policy, or ``None``.
    """
    policies = (spec.get("indexManagement") or {}).get("policies") or []
    for policy in policies:
        name = policy.get("name") or ""
        phases = policy.get("phases") or {}
        try:
            crontab_schedule_for(policy.get("pollInterval") or "")
            min_age = (phases.get("delete") or {}).get("minAge")
            if min_age is not None:
                millis_for_time_unit(min_age)
            rollover = ((phases.get("hot") or {}).get("actions") or {}).get(
                "rollover"
            ) or {}
            if rollover.get("maxAge") is not None:
                parse_time_unit(rollover["maxAge"])
        except InvalidTimeUnitError as e:
            return f"Invalid index management policy '{name}': {e}"
    return None


def is_valid_master_count(request: ClusterRequest) -> bool:
    if not request.node_specs:
        return True
    return 0 < request.master_count() <= MAX_MASTER_COUNT


def is_valid_data_count(request: ClusterRequest) -> bool:
    if not request.node_specs:
        return True
    return request.data_count() > 0


def is_valid_redundancy_policy(request: ClusterRequest) -> bool:
    policy = request.redundancy_policy
    if policy == RedundancyPolicy.ZERO:
        return True
    if policy in (
        RedundancyPolicy.SINGLE,
        RedundancyPolicy.MULTIPLE,
        RedundancyPolicy.FULL,
    ):
        return request.data_count() > 1
    return False


async def is_valid_scale_down_rate(request: ClusterRequest) -> bool:
    """
    Check that the number of data nodes does not shrink faster than the
    lowest number of index replicas permits.

    The rate is the difference between the current number of data pods, in
    any state, and the requested number of data nodes. A positive rate must
    not exceed the lowest replica count of all indices. A cluster without
    indices can always be scaled down.
    """
    data_pods = (await request.role_pod_state_map()).get(NodeRole.DATA.value, {})
    current = sum(len(data_pods.get(state.value, [])) for state in PodState)
    if current <= 0:
        return True

    rate = current - request.data_count()
    if rate <= 0:
        return True
    lowest = await request.gateway.get_lowest_replica_value()
    if lowest is None:
        return True
    return rate <= lowest


async def _check(
    request: ClusterRequest,
    valid: bool,
    type: ClusterConditionType,
    message: str,
    reason: str = REASON_INVALID_SETTINGS,
) -> None:
    if valid:
        await request.recorder.update_condition(type, ConditionStatus.FALSE)
        return
    await request.recorder.update_condition(
        type, ConditionStatus.TRUE, reason, message
    )
    raise InvalidSpecError(message)


async def validate_configuration(request: ClusterRequest) -> None:
    """
    Validate the spec of a cluster before anything is changed.

    The outcome of every check is recorded as a condition. The first failing
    check raises :exc:`~elastic.operator.exceptions.InvalidSpecError`.
    """
    await _check(
        request,
        is_valid_master_count(request),
        ClusterConditionType.INVALID_MASTERS,
        MESSAGE_INVALID_MASTERS,
    )
    await _check(
        request,
        is_valid_data_count(request),
        ClusterConditionType.INVALID_DATA,
        MESSAGE_INVALID_DATA,
    )
    await _check(
        request,
        is_valid_redundancy_policy(request),
        ClusterConditionType.INVALID_REDUNDANCY,
        MESSAGE_INVALID_REDUNDANCY,
    )
    await _check(
        request,
        await is_valid_scale_down_rate(request),
        ClusterConditionType.INVALID_REDUNDANCY,
        MESSAGE_INVALID_SCALE_DOWN,
    )

    uuid_error = validate_uuids(
        request.name, request.status.get("nodes") or [], request.node_specs
    )
    await _check(
        request,
        uuid_error is None,
        ClusterConditionType.INVALID_UUID,
        uuid_error or "",
        REASON_INVALID_SPEC,
    )

    index_management_error = validate_index_management(request.spec)
    await _check(
        request,
        index_management_error is None,
        ClusterConditionType.INVALID_INDEX_MANAGEMENT,
        index_management_error or "",
        REASON_INVALID_SPEC,
    )
