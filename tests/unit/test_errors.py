from __future__ import annotations

import pytest

from xrf_confdir.domain import errors
from xrf_confdir.domain.errors import (
    BackupError,
    ConfigConflict,
    FragmentIOError,
    InvalidFormat,
    InvalidOption,
    NoPortAvailable,
    NotFound,
    PortUnavailable,
    ProtocolNotSupported,
    ReloadFailed,
    RenderError,
    ValidationFailed,
    XrfError,
)


def test_error_hierarchy() -> None:
    for exception_type in (
        ProtocolNotSupported,
        InvalidOption,
        ConfigConflict,
        NotFound,
        PortUnavailable,
        NoPortAvailable,
        FragmentIOError,
        InvalidFormat,
        RenderError,
        ValidationFailed,
        BackupError,
        ReloadFailed,
    ):
        assert issubclass(exception_type, XrfError)
        assert isinstance(exception_type("boom"), Exception)


@pytest.mark.parametrize(
    ("exception_type", "category"),
    [
        (ProtocolNotSupported, errors.INPUT),
        (InvalidOption, errors.INPUT),
        (PortUnavailable, errors.INPUT),
        (ConfigConflict, errors.STATE),
        (NotFound, errors.STATE),
        (NoPortAvailable, errors.STATE),
        (FragmentIOError, errors.MUTATION),
        (InvalidFormat, errors.MUTATION),
        (RenderError, errors.MUTATION),
        (ValidationFailed, errors.VALIDATION),
        (BackupError, errors.BACKUP),
    ],
)
def test_categories_let_callers_choose_a_response(exception_type, category) -> None:
    assert exception_type("x").category == category


def test_context_drops_none_values_and_describes_itself() -> None:
    err = ConfigConflict("protocol with tag 'ss1' already exists", tag="ss1", path=None)
    assert err.context == {"tag": "ss1"}
    assert str(err) == "protocol with tag 'ss1' already exists"
    assert err.describe() == "protocol with tag 'ss1' already exists (tag=ss1)"


def test_with_context_returns_same_instance() -> None:
    err = BackupError("failed")
    assert err.with_context(path="/tmp/a", ignored=None) is err
    assert err.context == {"path": "/tmp/a"}
