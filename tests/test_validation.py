"""上传参数校验测试"""

import re

import pytest

from app.features.uploads.models import ExpiresOption
from app.features.uploads.validation import (
    ALLOWED_MIME_TYPES,
    DANGEROUS_MIME_TYPES,
    ensure_valid_upload,
    is_valid_mime_type,
    parse_expires_option,
    sanitize_filename,
    validate_file_size,
)
from app.shared.exceptions import ValidationError


SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]*$")


@pytest.mark.parametrize("mime_type", ["image/png", "application/pdf", "video/mp4", "text/plain"])
def test_allowlisted_mime_types_are_accepted(mime_type):
    assert is_valid_mime_type(mime_type)


@pytest.mark.parametrize("mime_type", ["", None, "image/x-unknown", "application/x-foo", "nonsense"])
def test_unknown_mime_types_are_rejected(mime_type):
    assert not is_valid_mime_type(mime_type)


def test_dangerous_mime_types_are_rejected_even_with_wildcards():
    for mime_type in DANGEROUS_MIME_TYPES:
        assert not is_valid_mime_type(mime_type, allow_wildcards=True)


def test_blocklist_wins_over_allowlist(monkeypatch):
    import app.features.uploads.validation as validation

    monkeypatch.setattr(
        validation, "ALLOWED_MIME_TYPES", ALLOWED_MIME_TYPES | {"application/x-msdownload"}
    )
    assert not validation.is_valid_mime_type("application/x-msdownload")


def test_wildcards_only_when_enabled():
    assert not is_valid_mime_type("image/x-brand-new")
    assert is_valid_mime_type("image/x-brand-new", allow_wildcards=True)
    assert is_valid_mime_type("audio/x-brand-new", allow_wildcards=True)
    assert not is_valid_mime_type("image/", allow_wildcards=True)
    assert not is_valid_mime_type("application/x-brand-new", allow_wildcards=True)


@pytest.mark.parametrize(
    "size,expected",
    [(0, False), (-1, False), (1, True), (100, True), (101, False)],
)
def test_validate_file_size_bounds(size, expected):
    assert validate_file_size(size, 100) is expected


@pytest.mark.parametrize(
    "name",
    ["cat.png", "我的 文件 (1).pdf", "../../etc/passwd", "a" * 600, "", "🙂🙂.txt", "tab\tname"],
)
def test_sanitize_filename_is_total_and_stable(name):
    cleaned = sanitize_filename(name)
    assert len(cleaned) <= 255
    assert SAFE_NAME.match(cleaned)
    assert sanitize_filename(cleaned) == cleaned


def test_sanitize_filename_replaces_each_character():
    assert sanitize_filename("my file!.png") == "my_file_.png"
    assert sanitize_filename("文件.txt") == "__.txt"


def test_parse_expires_option():
    assert parse_expires_option("1h") is ExpiresOption.ONE_HOUR
    assert parse_expires_option("30d").duration.days == 30
    with pytest.raises(ValidationError):
        parse_expires_option("2w")
    with pytest.raises(ValidationError):
        parse_expires_option(None)


def test_ensure_valid_upload_reports_specific_reason():
    with pytest.raises(ValidationError, match="文件过大"):
        ensure_valid_upload(101, "image/png", 100)
    with pytest.raises(ValidationError, match="文件过小"):
        ensure_valid_upload(0, "image/png", 100)
    with pytest.raises(ValidationError, match="不允许的文件类型"):
        ensure_valid_upload(10, "application/x-msdownload", 100)
    ensure_valid_upload(10, "image/png", 100)
