"""
Configuration helpers for ChatService.

ChatService accepts the same kinds of configuration objects a Reticulum
interface does: a plain dict, a ConfigObj (or section of one), or a path to
an ini-style file. Values read from files are strings, so booleans and
numbers are converted here.

Example file:

    [ChatService]
      name = Kitchen
      secure = no
      read_buffer_size = 1024
      accept_retry_delay = 0.5
"""

import os

import RNS
from RNS.vendor.configobj import ConfigObj

DEFAULT_SECTION = "ChatService"

TRUE_STRINGS = ["yes", "true", "1", "on"]


def get_config_obj(configuration):
    """
    Normalise configuration into something with a dict-like get().

    Args:
        configuration: None, dict, ConfigObj/Section, or path to a config file

    Returns:
        dict or ConfigObj
    """
    if configuration is None:
        return {}

    if isinstance(configuration, dict):
        # ConfigObj and its Sections are dict subclasses
        return configuration

    if isinstance(configuration, (str, os.PathLike)):
        return load_config(configuration)

    raise TypeError(f"unsupported configuration type {type(configuration).__name__}")


def load_config(path, section=DEFAULT_SECTION):
    """
    Load a configuration file and return the named section.

    If the file has no such section, the top level is returned so that flat
    files work too.
    """
    path = os.path.expanduser(str(path))
    if not os.path.isfile(path):
        raise FileNotFoundError(f"configuration file {path} does not exist")

    config = ConfigObj(path)
    if section in config:
        RNS.log(f"Loaded [{section}] from {path}", RNS.LOG_DEBUG)
        return config[section]

    RNS.log(f"No [{section}] section in {path}, using top level", RNS.LOG_DEBUG)
    return config


def parse_bool(value):
    """Convert "yes"/"no" style strings (or anything truthy) to bool."""
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)
