from __future__ import annotations

from typing import Annotated

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _year_format(v):
    v = _to_upper_str(v)
    # Accept the pattern spelling some clients send.
    return {"YYYY": "FULL", "YY": "SHORT"}.get(v, v)


# Enumerated format options are normalized here but checked by `numbering.validate_format`,
# so an unsupported token is reported as an invalid format config rather than a schema error.
FormatCode = Annotated[str, BeforeValidator(_to_upper_str)]
YearFormatCode = Annotated[str, BeforeValidator(_year_format)]


BranchCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(max_length=16, pattern=r"^[A-Z0-9]*$"),
]
