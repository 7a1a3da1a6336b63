class ProfileError(Exception):
    """Base class for everything that aborts a profile conversion."""


class MissingMetaError(ProfileError):
    pass


class UnsupportedVersionError(ProfileError):
    pass


class TableLengthError(ProfileError):
    """A columnar table has a column whose length disagrees with `length`."""


class MarkerTimeError(ProfileError):
    pass


class MalformedProfileError(ProfileError):
    pass


class AddressParseError(ProfileError, ValueError):
    """Raised by the address locator for a string that is not a hex number.

    Never escapes a conversion: the extractor treats it as "not an address".
    """
