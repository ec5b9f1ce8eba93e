import json
from typing import Any, Self

from cross_web import Cookie
from cross_web import Response as BaseResponse

from ._url import with_query

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, max-age=0",
    "Pragma": "no-cache",
}


class Response(BaseResponse):
    @classmethod
    def json_response(
        cls,
        data: Any,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
        cookies: list[Cookie] | None = None,
    ) -> Self:
        return cls(
            status_code=status_code,
            body=json.dumps(data),
            headers={"Content-Type": "application/json", **(headers or {})},
            cookies=cookies or [],
        )

    @classmethod
    def error(
        cls,
        error: str,
        error_description: str | None = None,
        status_code: int = 400,
        headers: dict[str, str] | None = None,
        cookies: list[Cookie] | None = None,
    ) -> Self:
        body = {"error": error}

        if error_description:
            body["error_description"] = error_description

        return cls.json_response(
            body, status_code=status_code, headers=headers, cookies=cookies
        )

    @classmethod
    def redirect_to(
        cls,
        url: str,
        query_params: dict[str, str | None] | None = None,
        cookies: list[Cookie] | None = None,
        status_code: int = 302,
    ) -> Self:
        return cls(
            status_code=status_code,
            body="",
            headers={"Location": with_query(url, query_params or {})},
            cookies=cookies or [],
        )

    @classmethod
    def error_redirect(
        cls,
        url: str,
        error: str,
        redirect: str | None = None,
        cookies: list[Cookie] | None = None,
    ) -> Self:
        return cls.redirect_to(
            url,
            query_params={"error": error, "redirect": redirect},
            cookies=cookies,
        )
