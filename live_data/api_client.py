# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Minimal REST client for the backend.  Responses are wrapped in an
#     {errorCode, errorMessage, payload} envelope which get() unwraps.
# ---------------------------------------------------------------------
import asyncio
import json
import logging

import aiohttp

from definitions import KEY, LOGGER_NAME, SETTINGS

log = logging.getLogger(LOGGER_NAME)


class ApiError(Exception):

    def __init__(self, message, status=None, error_code=None):
        super().__init__(message)
        self.status = status
        self.error_code = error_code


def _build_params(params):
    """
    Turn a params dict into a list of (key, value) pairs.  Lists become
    repeated keys; None values are left out.
    """
    result = []
    if not params:
        return result

    for key, value in params.items():
        if value is None:
            continue

        if isinstance(value, (list, tuple)):
            values = value
        else:
            values = [value]

        for item in values:
            if isinstance(item, bool):
                item = "true" if item else "false"
            result.append((key, str(item)))

    return result


class ApiClient(object):

    def __init__(self, base_url, session, timeout=SETTINGS.REQUEST_TIMEOUT):
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def get_base_url(self):
        return self._base_url

    async def request_json(self, method, endpoint, params=None, data=None):
        """
        Return the decoded JSON body of a request.  Raises ApiError for
        anything other than a 2xx response with a JSON body.
        """
        url = self._base_url + endpoint

        try:
            async with self._session.request(
                method,
                url,
                params=_build_params(params),
                json=data,
                timeout=self._timeout,
            ) as response:

                if response.status < 200 or response.status >= 300:
                    details = await response.text()
                    log.error(
                        "%s %s: HTTP %d: %s", method, endpoint, response.status, details
                    )
                    raise ApiError(
                        "HTTP error! status: %d" % response.status,
                        status=response.status,
                    )

                return await response.json(content_type=None)

        except asyncio.TimeoutError:
            raise ApiError("Request timeout")

        except aiohttp.ClientError as err:
            raise ApiError("Request failed: %s" % err)

        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            raise ApiError("Malformed response: %s" % err)

    async def get(self, endpoint, params=None):
        body = await self.request_json("GET", endpoint, params=params)
        return self._unwrap(body)

    def _unwrap(self, body):
        if not isinstance(body, dict):
            raise ApiError("Malformed response: not an object")

        error_code = body.get(KEY.ERROR_CODE)
        if error_code != 0:
            message = body.get(KEY.ERROR_MESSAGE) or "API error"
            raise ApiError(message, error_code=error_code)

        return body.get(KEY.PAYLOAD)
