# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import httpx

from tegrakeys.logger import log

STATUS_MESSAGES = {
    400: "The NetHSM rejected the request arguments.",
    401: "Authentication failed, please check the NetHSM username and password.",
    403: "The NetHSM user does not have the required role (Administrator needed "
    "to generate and export keys).",
    404: "No such key found on the NetHSM.",
    405: "The NetHSM does not support this operation.",
    406: "The NetHSM cannot provide the key in the requested format.",
    409: "A key with this ID already exists on the NetHSM.",
    412: "The NetHSM is not operational (locked or unprovisioned).",
    413: "The NetHSM key storage is full.",
    429: "The NetHSM is rate limiting requests, try again later.",
}


def describe_exception(e: Exception, info: str = "") -> str:
    """Turn an httpx failure into a message an operator can act on"""
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        message = STATUS_MESSAGES.get(status)
        if message is None:
            if status >= 500:
                message = f"The NetHSM reported an internal error (HTTP {status})."
            else:
                message = f"Unexpected NetHSM response (HTTP {status})."
    elif isinstance(e, httpx.TimeoutException):
        message = "The NetHSM did not answer in time."
    elif isinstance(e, httpx.ConnectError):
        message = "Cannot connect to the NetHSM, please check the URL and network."
    elif isinstance(e, httpx.TransportError):
        message = f"Communication with the NetHSM failed: {e}"
    else:
        message = f"{e.__class__.__name__}: {e}"
    return f"{message} ({info})" if info else message


def handle_exceptions(e: Exception, info: str = "") -> str:
    message = describe_exception(e, info)
    log.error(message)
    return message
