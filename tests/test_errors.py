"""Unit tests for auth/errors.py -- ErrorClassifier.

Covers:
- every auth kind collapses to 401 + one generic message
- structured storage codes map to 409/404/500
- text signatures are a fallback only when the code is UNKNOWN
- arbitrary exceptions: ValueError -> 400, anything else -> 500
- the original exception is always kept on the result
"""

import pytest

from auth.errors import (
    ErrorClassifier,
    ErrorKind,
    InactiveAccountError,
    InvalidCredentialsError,
    InvalidInputError,
    MalformedDigestError,
    MalformedHeaderError,
    MalformedTokenError,
    RandomSourceError,
    RecordNotFoundError,
    ResourceNotFoundError,
    StorageError,
    StorageErrorCode,
    TokenExpiredError,
    TokenNotFoundError,
    UserNotFoundError,
)


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


class TestAuthKinds:
    @pytest.mark.parametrize(
        "error, kind",
        [
            (InvalidCredentialsError("password does not match"), ErrorKind.INVALID_CREDENTIALS),
            (UserNotFoundError("no user with that email"), ErrorKind.USER_NOT_FOUND),
            (InactiveAccountError("user is not active"), ErrorKind.INACTIVE_ACCOUNT),
            (TokenNotFoundError("no matching token found"), ErrorKind.TOKEN_NOT_FOUND),
            (TokenExpiredError("token has expired"), ErrorKind.TOKEN_EXPIRED),
            (MalformedHeaderError("bad header"), ErrorKind.MALFORMED_HEADER),
            (MalformedTokenError("bad token"), ErrorKind.MALFORMED_TOKEN),
        ],
    )
    def test_auth_failures_share_one_client_message(self, classifier, error, kind) -> None:
        result = classifier.classify(error)
        assert result.kind is kind
        assert result.status == 401
        assert result.message == "authentication failed"
        assert result.is_client_error

    def test_invalid_input_echoes_own_message(self, classifier) -> None:
        result = classifier.classify(InvalidInputError("no fields to update"))
        assert (result.kind, result.status, result.message) == (ErrorKind.INVALID_INPUT, 400, "no fields to update")

    def test_resource_not_found_echoes_own_message(self, classifier) -> None:
        result = classifier.classify(ResourceNotFoundError("user 9 not found"))
        assert (result.kind, result.status, result.message) == (ErrorKind.NOT_FOUND, 404, "user 9 not found")

    @pytest.mark.parametrize("error", [MalformedDigestError("bad digest"), RandomSourceError("no entropy")])
    def test_internal_auth_errors_hide_detail(self, classifier, error) -> None:
        result = classifier.classify(error)
        assert (result.kind, result.status, result.message) == (ErrorKind.INTERNAL, 500, "internal error")
        assert not result.is_client_error


class TestStorageCodes:
    @pytest.mark.parametrize(
        "code, kind, status, message",
        [
            (
                StorageErrorCode.UNIQUE_VIOLATION,
                ErrorKind.DUPLICATE_VALUE,
                409,
                "duplicate value violates unique constraint",
            ),
            (
                StorageErrorCode.VALUE_TOO_LONG,
                ErrorKind.VALUE_TOO_LONG,
                409,
                "the value you are trying to insert is too large",
            ),
            (StorageErrorCode.FOREIGN_KEY_VIOLATION, ErrorKind.FOREIGN_KEY_VIOLATION, 409, "foreign key violation"),
            (StorageErrorCode.NOT_FOUND, ErrorKind.NOT_FOUND, 404, "not found"),
            (StorageErrorCode.TIMEOUT, ErrorKind.INTERNAL, 500, "internal error"),
            (StorageErrorCode.CONNECTIVITY, ErrorKind.INTERNAL, 500, "internal error"),
        ],
    )
    def test_code_mapping(self, classifier, code, kind, status, message) -> None:
        result = classifier.classify(StorageError(code, "users.email"))
        assert (result.kind, result.status, result.message) == (kind, status, message)

    def test_storage_message_is_never_echoed(self, classifier) -> None:
        result = classifier.classify(StorageError(StorageErrorCode.UNIQUE_VIOLATION, "Key (email)=(a@b.com) exists"))
        assert "a@b.com" not in result.message

    def test_record_not_found(self, classifier) -> None:
        result = classifier.classify(RecordNotFoundError())
        assert (result.kind, result.status) == (ErrorKind.NOT_FOUND, 404)

    def test_timeout_cause_is_preserved(self, classifier) -> None:
        error = StorageError(StorageErrorCode.TIMEOUT, "statement timeout")
        result = classifier.classify(error)
        assert result.cause is error


class TestTextFallback:
    @pytest.mark.parametrize(
        "text, kind",
        [
            ("ERROR: duplicate key value violates unique constraint (SQLSTATE 23505)", ErrorKind.DUPLICATE_VALUE),
            ("UNIQUE constraint failed: users.email", ErrorKind.DUPLICATE_VALUE),
            ("value too long for type character varying(255) (SQLSTATE 22001)", ErrorKind.VALUE_TOO_LONG),
            ("FOREIGN KEY constraint failed", ErrorKind.FOREIGN_KEY_VIOLATION),
            ("insert on table tokens violates foreign key constraint (SQLSTATE 23503)", ErrorKind.FOREIGN_KEY_VIOLATION),
        ],
    )
    def test_unknown_code_falls_back_to_text(self, classifier, text, kind) -> None:
        result = classifier.classify(StorageError(StorageErrorCode.UNKNOWN, text))
        assert result.kind is kind
        assert result.status == 409

    def test_text_in_chained_cause_is_matched(self, classifier) -> None:
        try:
            try:
                raise RuntimeError("UNIQUE constraint failed: users.email")
            except RuntimeError as exc:
                raise StorageError(StorageErrorCode.UNKNOWN, "insert failed") from exc
        except StorageError as error:
            result = classifier.classify(error)
        assert result.kind is ErrorKind.DUPLICATE_VALUE

    def test_unmatched_unknown_is_internal(self, classifier) -> None:
        result = classifier.classify(StorageError(StorageErrorCode.UNKNOWN, "disk I/O error"))
        assert (result.kind, result.status) == (ErrorKind.INTERNAL, 500)

    def test_text_ignored_when_code_is_structured(self, classifier) -> None:
        error = StorageError(StorageErrorCode.CONNECTIVITY, "UNIQUE constraint failed")
        assert classifier.classify(error).kind is ErrorKind.INTERNAL


class TestOtherExceptions:
    def test_value_error_is_invalid_input(self, classifier) -> None:
        result = classifier.classify(ValueError("bad literal"))
        assert (result.kind, result.status, result.message) == (ErrorKind.INVALID_INPUT, 400, "invalid request")

    def test_runtime_error_is_internal(self, classifier) -> None:
        error = RuntimeError("boom")
        result = classifier.classify(error)
        assert (result.kind, result.status, result.message) == (ErrorKind.INTERNAL, 500, "internal error")
        assert result.cause is error

    def test_text_signatures_ignored_for_plain_exceptions(self, classifier) -> None:
        result = classifier.classify(RuntimeError("UNIQUE constraint failed: users.email"))
        assert result.kind is ErrorKind.INTERNAL
