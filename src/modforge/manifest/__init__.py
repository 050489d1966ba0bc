from .editor import (
    ExportList,
    ManifestDocument,
    RequiredModule,
    add_to_top_level_string_array,
    get_export_list,
    get_nested_bool,
    get_nested_string,
    get_nested_string_array,
    get_required_modules,
    get_top_level_string,
    get_top_level_string_array,
    remove_from_top_level_string_array,
    remove_nested_key,
    remove_required_module,
    remove_top_level_key,
    set_nested_bool,
    set_nested_hashtable_array,
    set_nested_string,
    set_nested_string_array,
    set_required_modules,
    set_top_level_hashtable_string_array,
    set_top_level_module_version,
    set_top_level_string,
    set_top_level_string_array,
    upsert_required_module,
)
from .parser import ManifestSyntaxError, parse

__all__ = [
    "ExportList",
    "ManifestDocument",
    "ManifestSyntaxError",
    "RequiredModule",
    "add_to_top_level_string_array",
    "get_export_list",
    "get_nested_bool",
    "get_nested_string",
    "get_nested_string_array",
    "get_required_modules",
    "get_top_level_string",
    "get_top_level_string_array",
    "parse",
    "remove_from_top_level_string_array",
    "remove_nested_key",
    "remove_required_module",
    "remove_top_level_key",
    "set_nested_bool",
    "set_nested_hashtable_array",
    "set_nested_string",
    "set_nested_string_array",
    "set_required_modules",
    "set_top_level_hashtable_string_array",
    "set_top_level_module_version",
    "set_top_level_string",
    "set_top_level_string_array",
    "upsert_required_module",
]
