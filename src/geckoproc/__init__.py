from geckoproc.constants import GECKO_PROFILE_VERSION, PROCESSED_PROFILE_VERSION
from geckoproc.process_profile import (
    process_gecko_or_devtools_profile,
    process_gecko_profile,
    serialize_profile,
)
from geckoproc.gecko_versioning import upgrade_gecko_profile_to_current_version
