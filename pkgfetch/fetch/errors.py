
class PkgFetchError(Exception):
    """Base of all errors fetching and verifying a Pkg. Carries an optional internal (causing) error."""
    def __init__(self, msg:str, internal_error:BaseException|None=None):
        super().__init__(msg)
        self.msg = msg
        self.internal_error = internal_error

    def __str__(self) -> str:
        return f"{self.msg}. InternalError: {self.internal_error}"

class PkgSignatureRequiredError(PkgFetchError, ValueError):
    """The Pkg metadata signature was empty. Signature checking cannot be disabled."""
    pass

class PkgMetaError(PkgFetchError):
    """An error fetching, verifying and using a Pkg meta file."""
    pass

class PkgSignatureVerificationError(PkgFetchError):
    """No provided signature verified with any configured key."""
    pass

class PkgMetaVerificationError(PkgMetaError, PkgSignatureVerificationError):
    pass

class PkgPrecheckError(PkgFetchError):
    """An error prechecking a Pkg; covers all checks of the Pkg meta done before any part is fetched."""
    pass

class PkgPartError(PkgFetchError):
    def __init__(self, part_id:str, msg:str, internal_error:BaseException|None=None):
        super().__init__(msg, internal_error)
        self.part_id = part_id

class PkgSourceFetchError(PkgPartError):
    """A generic (non-auth) error fetching a part. Only raised after all sources of a part failed."""
    pass

class PkgSourceFetchAuthError(PkgSourceFetchError):
    """All sources of a part failed with an authentication (401) or authorization (403) error."""
    pass

class PkgSourceError(PkgPartError):
    """A generic error handling a part, not specific to fetching or verification, e.g. writing it to disk."""
    pass

class PkgPartIntegrityError(PkgPartError):
    """The sha256sum of the downloaded part does not match the expected one."""
    pass

class PkgPartVerificationError(PkgPartError, PkgSignatureVerificationError):
    pass

class PkgAggregateFetchError(PkgFetchError):
    """One or more parts failed. Holds every part error, keyed by part id."""
    def __init__(self, errors:dict[str, PkgFetchError]):
        self.errors = dict(errors)
        details = "; ".join(f"{part_id}: {type(err).__name__}: {err}" for part_id, err in sorted(self.errors.items()))
        super().__init__(f"Error fetching {len(self.errors)} part(s). Errors: {details}")

    def __str__(self) -> str:
        return self.msg
