# The newest version of the raw ("Gecko") profile format this package knows
# how to upgrade to. Anything newer was written by a newer profiler backend.
GECKO_PROFILE_VERSION = 31

# The version of the processed profile format produced by process_profile.
PROCESSED_PROFILE_VERSION = 56

# Gecko profiles before version 1 did not have a meta.version field.
UNANNOTATED_VERSION = 0

# Marker phases.
INSTANT = 0
INTERVAL = 1
INTERVAL_START = 2
INTERVAL_END = 3


class ResourceType:
    UNKNOWN = 0
    LIBRARY = 1
    ADDON = 2
    WEBHOST = 3
    OTHERHOST = 4
    URL = 5


MAIN_THREAD_NAME = 'GeckoMain'

# Categories injected by the version 11 upgrader, in index order.
VERSION_11_CATEGORIES = [
    {'name': 'Idle', 'color': 'transparent'},
    {'name': 'Other', 'color': 'grey'},
    {'name': 'JavaScript', 'color': 'yellow'},
    {'name': 'Layout', 'color': 'purple'},
    {'name': 'Graphics', 'color': 'green'},
    {'name': 'DOM', 'color': 'blue'},
    {'name': 'GC / CC', 'color': 'orange'},
    {'name': 'Network', 'color': 'lightblue'},
]

# Categories that must exist once the version 16 upgrader has run.
DEFAULT_CATEGORIES = [
    {'name': 'Idle', 'color': 'transparent', 'subcategories': ['Other']},
    {'name': 'Other', 'color': 'grey', 'subcategories': ['Other']},
    {'name': 'Layout', 'color': 'purple', 'subcategories': ['Other']},
    {'name': 'JavaScript', 'color': 'yellow', 'subcategories': ['Other']},
    {'name': 'GC / CC', 'color': 'orange', 'subcategories': ['Other']},
    {'name': 'Network', 'color': 'lightblue', 'subcategories': ['Other']},
    {'name': 'Graphics', 'color': 'green', 'subcategories': ['Other']},
    {'name': 'DOM', 'color': 'blue', 'subcategories': ['Other']},
]
