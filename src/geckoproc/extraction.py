"""
extraction.py

Funcs and resources are not part of the raw profile format; they are implied
by the location strings of the frame table. This module derives a FuncTable
and a ResourceTable from those strings by trying, in order:

  1. an unsymbolicated address, "0x7ffd8e0b2a10";
  2. a native symbol, "funcName (in libxul.so) + 123";
  3. a JS function, "funcName (http://script.url/:12:34)" or "url:12:34";
  4. anything else, which gets a func without a resource.

No location string ever aborts the conversion.
"""

import json
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import NamedTuple, Optional

from geckoproc.address_locator import AddressLocator
from geckoproc.configured_logger import new_logger
from geckoproc.constants import ResourceType
from geckoproc.errors import AddressParseError
from geckoproc.interner import GlobalDataCollector, StringTable
from geckoproc.profile_schema import ExtensionTable, FuncTable, ResourceTable

logger = new_logger('extraction')

_CPP_FUNCTION_RES = (
    # "functionName (in library name) + 1234"
    re.compile(r'^(.*) \(in ([^)]*)\) (\+ [0-9]+)$'),
    # "functionName (in library name) (1234:1234)"
    re.compile(r'^(.*) \(in ([^)]*)\) (\(.*:.*\))$'),
    # "functionName (in library name)"
    re.compile(r'^(.*) \(in ([^)]*)\)$'),
)

_JS_FUNCTION_RES = (
    # "functionName (http://script.url/:1234:1234)"
    re.compile(r'^(.*) \((.+?):([0-9]+)(?::([0-9]+))?\)$'),
    # "http://script.url/:1234:1234"
    re.compile(r'^()(.+?):([0-9]+)(?::([0-9]+))?$'),
)

_IGNORED_FUNCTION_PREFIX = 'non-virtual thunk to '

_WEBHOST_SCHEMES = ('http', 'https', 'moz-extension')
_DEFAULT_PORTS = {'http': 80, 'https': 443}


class FrameInfo(NamedTuple):
    func_index: int
    frame_address: Optional[int]


class ExtractedFuncs(NamedTuple):
    func_table: FuncTable
    resource_table: ResourceTable
    frame_funcs: list[int]
    frame_addresses: list[Optional[int]]


@dataclass
class ExtractionInfo:
    """Everything the classification steps of one thread share."""
    func_table: FuncTable
    resource_table: ResourceTable
    gecko_thread_string_array: list[str]
    string_table: StringTable
    address_locator: AddressLocator
    global_data_collector: GlobalDataCollector
    lib_to_resource_index: dict[int, int] = field(default_factory=dict)
    origin_to_resource_index: dict[str, int] = field(default_factory=dict)
    lib_name_to_resource_index: dict[int, int] = field(default_factory=dict)
    string_to_new_func_index_and_frame_address: dict[str, FrameInfo] = field(
        default_factory=dict)
    # Cleaned native function names, so thunks share the func they wrap.
    native_func_name_to_func_index: dict[str, int] = field(
        default_factory=dict)


def url_origin_and_host(uri: str) -> Optional[tuple[str, str]]:
    """
    (origin, host) of a web or extension URL, None for anything else.

    The host keeps a non-default port, the origin is "scheme://host".
    """
    try:
        parts = urllib.parse.urlsplit(uri)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _WEBHOST_SCHEMES or not parts.hostname:
        return None
    host = parts.hostname
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        host = f'{host}:{port}'
    return f'{scheme}://{host}', host


def get_or_create_uri_resource(script_uri: str, resource_table: ResourceTable,
                               string_table: StringTable,
                               origin_to_resource_index: dict[str, int]) -> int:
    """Resource index for a script URI, creating a webhost or url resource."""
    origin_and_host = url_origin_and_host(script_uri)
    if origin_and_host is None:
        origin, host = script_uri, None
    else:
        origin, host = origin_and_host

    resource_index = origin_to_resource_index.get(origin)
    if resource_index is not None:
        return resource_index

    if host:
        resource_index = resource_table.add_resource(
            lib=None,
            name=string_table.index_for_string(origin),
            host=string_table.index_for_string(host),
            type=ResourceType.WEBHOST)
    else:
        # A URL that doesn't point to the web, e.g. a chrome:// URL.
        resource_index = resource_table.add_resource(
            lib=None,
            name=string_table.index_for_string(script_uri),
            host=None,
            type=ResourceType.URL)
    origin_to_resource_index[origin] = resource_index
    return resource_index


def _get_real_script_uri(url: str) -> str:
    """Script URIs can be chains like "a -> b -> c"; only the last one counts."""
    if url:
        return url.split(' -> ')[-1]
    return url


def _clean_function_name(function_name: str) -> str:
    if function_name.startswith(_IGNORED_FUNCTION_PREFIX):
        return function_name[len(_IGNORED_FUNCTION_PREFIX):]
    return function_name


def _add_extension_origin(info: ExtractionInfo, extensions: ExtensionTable,
                          index: int):
    base_url = extensions.base_url[index]
    origin_and_host = url_origin_and_host(base_url)
    origin = origin_and_host[0] if origin_and_host else base_url
    if origin in info.origin_to_resource_index:
        return

    quoted_name = json.dumps(extensions.name[index], ensure_ascii=False)
    name = f'Extension {quoted_name} (ID: {extensions.id[index]})'
    info.origin_to_resource_index[origin] = info.resource_table.add_resource(
        lib=None,
        name=info.string_table.index_for_string(name),
        host=info.string_table.index_for_string(extensions.id[index]),
        type=ResourceType.ADDON)


def _extract_unsymbolicated_function(info: ExtractionInfo,
                                     location_string: str,
                                     location_index: int) -> Optional[FrameInfo]:
    """
    An address such as "0xfe9a097e0" gets a func of its own, since without
    symbols we can't tell which addresses share a function. The address is
    resolved to a library, which becomes the func's resource, and turned into
    a library-relative offset.
    """
    if not location_string.startswith('0x'):
        return None

    resource_index = -1
    address_relative_to_lib = -1
    try:
        lib, relative_address = info.address_locator.locate_address(
            location_string)
    except AddressParseError as e:
        logger.debug(f'Not an address: {e}')
    else:
        if lib is None:
            logger.debug(f'No library contains address {location_string}')
        else:
            address_relative_to_lib = relative_address
            lib_index = info.global_data_collector.index_for_lib(lib)
            resource_index = info.lib_to_resource_index.get(lib_index)
            if resource_index is None:
                resource_index = info.resource_table.add_resource(
                    lib=lib_index,
                    name=info.string_table.index_for_string(lib['name']),
                    host=None,
                    type=ResourceType.LIBRARY)
                info.lib_to_resource_index[lib_index] = resource_index

    func_index = info.func_table.add_func(name=location_index,
                                          resource=resource_index)
    return FrameInfo(func_index, address_relative_to_lib)


def _extract_cpp_function(info: ExtractionInfo,
                          location_string: str) -> Optional[int]:
    for cpp_re in _CPP_FUNCTION_RES:
        cpp_match = cpp_re.match(location_string)
        if cpp_match:
            break
    else:
        return None

    func_name = _clean_function_name(cpp_match.group(1))
    func_name_index = info.string_table.index_for_string(func_name)
    library_name_index = info.string_table.index_for_string(
        cpp_match.group(2))

    func_index = info.native_func_name_to_func_index.get(func_name)
    if func_index is not None:
        return func_index

    resource_index = info.lib_name_to_resource_index.get(library_name_index)
    if resource_index is None:
        resource_index = info.resource_table.add_resource(
            lib=None,
            name=library_name_index,
            host=None,
            type=ResourceType.LIBRARY)
        info.lib_name_to_resource_index[library_name_index] = resource_index

    func_index = info.func_table.add_func(name=func_name_index,
                                          resource=resource_index)
    info.native_func_name_to_func_index[func_name] = func_index
    return func_index


def _extract_js_function(info: ExtractionInfo,
                         location_string: str) -> Optional[int]:
    for js_re in _JS_FUNCTION_RES:
        js_match = js_re.match(location_string)
        if js_match:
            break
    else:
        return None

    func_name, raw_script_uri, line, column = js_match.groups()
    script_uri = _get_real_script_uri(raw_script_uri)
    resource_index = get_or_create_uri_resource(script_uri,
                                                info.resource_table,
                                                info.string_table,
                                                info.origin_to_resource_index)

    if not func_name:
        # Frames for the evaluation of a whole script have no function name.
        func_name = f'(root scope) {script_uri}'

    return info.func_table.add_func(
        name=info.string_table.index_for_string(func_name),
        resource=resource_index,
        is_js=True,
        file_name=info.string_table.index_for_string(script_uri),
        line_number=int(line),
        column_number=int(column) if column else None)


def extract_funcs_and_resources_from_frame_locations(
        frame_locations: list[int],
        relevant_for_js_per_frame: list,
        gecko_thread_string_array: list[str],
        libs: list[dict],
        extensions: Optional[ExtensionTable],
        global_data_collector: GlobalDataCollector) -> ExtractedFuncs:
    """
    Build the func and resource tables of one thread.

    frame_locations are indexes into gecko_thread_string_array. The result
    maps every frame to a func, and to a library-relative address for the
    unsymbolicated frames (None for the others). Results are cached per
    location string.
    """
    info = ExtractionInfo(
        func_table=FuncTable(),
        resource_table=ResourceTable(),
        gecko_thread_string_array=gecko_thread_string_array,
        string_table=global_data_collector.get_string_table(),
        address_locator=AddressLocator(libs),
        global_data_collector=global_data_collector,
    )

    if extensions is not None:
        for index in range(extensions.length):
            _add_extension_origin(info, extensions, index)

    frame_funcs = []
    frame_addresses = []
    for frame_index, original_location_index in enumerate(frame_locations):
        location_string = gecko_thread_string_array[original_location_index]
        location_index = info.string_table.index_for_string(location_string)

        frame_info = info.string_to_new_func_index_and_frame_address.get(
            location_string)
        if frame_info is None:
            frame_info = _extract_unsymbolicated_function(
                info, location_string, location_index)
        if frame_info is None:
            func_index = _extract_cpp_function(info, location_string)
            if func_index is None:
                func_index = _extract_js_function(info, location_string)
            if func_index is None:
                func_index = info.func_table.add_func(
                    name=location_index,
                    relevant_for_js=bool(
                        relevant_for_js_per_frame[frame_index]))
            frame_info = FrameInfo(func_index, None)

        info.string_to_new_func_index_and_frame_address[
            location_string] = frame_info
        frame_funcs.append(frame_info.func_index)
        frame_addresses.append(frame_info.frame_address)

    return ExtractedFuncs(info.func_table, info.resource_table, frame_funcs,
                          frame_addresses)
