from __future__ import annotations

import pytest
from fastapi import HTTPException

from grantflow.apps.api.deps import expected_version_header


@pytest.mark.parametrize(("raw", "expected"), [(None, None), ("", None), ("3", 3), ('"4"', 4), ('W/"5"', 5)])
def test_if_match_parses_versions(raw: str | None, expected: int | None) -> None:
    assert expected_version_header(raw) == expected


@pytest.mark.parametrize("raw", ['"abc"', "0", "-2"])
def test_if_match_rejects_non_versions(raw: str) -> None:
    with pytest.raises(HTTPException) as excinfo:
        expected_version_header(raw)
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["code"] == "INVALID_IF_MATCH"
