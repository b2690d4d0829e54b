"""Error taxonomy for issue storage and sync.

Every error carries a ``corrective_action`` so callers can tell the user
what to do next without inspecting the exception type:

- ``NotFoundError``: an id or file could not be resolved.  Non-fatal in
  batch operations.
- ``ValidationError``: malformed fields.  Raised before anything is
  written.
- ``SyncConflictError``: the remote kept moving and bounded retries were
  exhausted.  Re-running sync is safe.
- ``SyncUnavailableError``: no remote or a network failure.  Sync degrades
  to local-only operation.
- ``IntegrityError``: on-disk data violates an invariant (missing mapping
  entry, duplicate internal id, orphaned reference).
- ``GitError``: a git invocation failed.
- ``NotInitializedError``: no ``.tbd`` project or sync worktree found.
"""

from __future__ import annotations


class TbdError(Exception):
    """Base class for all errors raised by tbd."""

    error_type = "error"
    default_action = "Check the message above and retry."

    def __init__(
        self, message: str, corrective_action: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.corrective_action = corrective_action or self.default_action

    def to_dict(self) -> dict[str, str]:
        """Structured form used in JSON sync reports."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "corrective_action": self.corrective_action,
        }


class NotFoundError(TbdError):
    error_type = "not_found"
    default_action = (
        "Check the id. Short ids look like 'tbd-a7k2'; run a listing "
        "to see valid ids."
    )


class ValidationError(TbdError):
    error_type = "validation_error"
    default_action = "Fix the invalid field values and try again."

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        corrective_action: str | None = None,
    ) -> None:
        super().__init__(message, corrective_action)
        self.errors = list(errors or [])


class SyncConflictError(TbdError):
    error_type = "sync_conflict"
    default_action = (
        "The remote sync branch kept changing during the push. "
        "Your changes are committed locally; run sync again."
    )


class SyncUnavailableError(TbdError):
    error_type = "sync_unavailable"
    default_action = (
        "Check the remote name and network connection. Local changes "
        "are kept and will be sent on the next successful sync."
    )


class IntegrityError(TbdError):
    error_type = "integrity_error"
    default_action = (
        "Run the consistency check to find and repair damaged data."
    )


class GitError(TbdError):
    """A git command exited non-zero."""

    error_type = "git_error"
    default_action = "Inspect the git output above and fix the repository."

    def __init__(
        self,
        args: list[str],
        returncode: int,
        stderr: str = "",
        corrective_action: str | None = None,
    ) -> None:
        cmd = " ".join(["git", *args])
        detail = stderr.strip() or "no output"
        super().__init__(
            f"'{cmd}' failed with exit code {returncode}: {detail}",
            corrective_action,
        )
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = stderr


class NotInitializedError(TbdError):
    error_type = "not_initialized"
    default_action = (
        "Run init in the repository root to create the .tbd directory "
        "and sync worktree."
    )


class PushRejectedError(SyncConflictError):
    """The remote refused a push because it moved (non-fast-forward)."""

    error_type = "push_rejected"
