"""
    resourceful.model.misc
    ~~~~~~~~~~~~~~~~

    Includes helper functions for naming conventions, localized messages
    and redirect safety, shared by the resource views.

"""
import logging
import re
import unicodedata
from urllib.parse import urlparse

import inflect
from babel.lists import format_list
from bson import ObjectId
from flask import current_app, request
from flask_babel import get_locale, gettext

logger = current_app.logger if current_app else logging.getLogger(__name__)

EMPTY_ID = ObjectId("000000000000000000000000")  # Needed to make empty non-matching Query objects

inflector = inflect.engine()

first_cap_re = re.compile(r"([A-Z]+)([A-Z][a-z])")
all_cap_re = re.compile(r"([a-z\d])([A-Z])")
namespace_re = re.compile(r"[/.]")


def underscore(word):
    """Turns a CamelCase or dashed name into snake_case, e.g. BlogPost -> blog_post"""
    word = first_cap_re.sub(r"\1_\2", word)
    word = all_cap_re.sub(r"\1_\2", word)
    return word.replace("-", "_").lower()


def camelize(word):
    """Turns snake_case into CamelCase, e.g. blog_post -> BlogPost"""
    return "".join(part[:1].upper() + part[1:] for part in word.split("_") if part)


def demodulize(path):
    """Strips any namespace from a path or dotted name, e.g. admin/blog_posts -> blog_posts"""
    return namespace_re.split(path)[-1]


def humanize(word):
    word = underscore(word)
    if word.endswith("_id"):
        word = word[:-3]
    word = word.replace("_", " ").strip()
    return word[:1].upper() + word[1:]


def singularize(word):
    """Singular of a plural name, e.g. blog_posts -> blog_post. Only the last word of a snake_case
    phrase carries the number. Singular words ending in s are not recognized, so only give plurals."""
    head, _sep, last = word.rpartition("_")
    if not last:
        return word
    singular = inflector.singular_noun(last)
    if singular is False:  # inflect returns False when already singular
        singular = last
    return f"{head}_{singular}" if head else singular


def pluralize(word):
    head, _sep, last = word.rpartition("_")
    if not last:
        return word
    # Expects a singular word, like a document class name
    plural = inflector.plural_noun(last)
    return f"{head}_{plural}" if head else plural


def translate(key, default):
    """Looks up a message by dotted key, e.g. articles.create.success. If the catalog has no
    translation for the key, default is used instead (give a lazy_gettext string to have it translated)."""
    msg = gettext(key)
    if msg == key:
        return str(default)
    return msg


def to_sentence(items):
    """Joins messages to one sentence using the current locale, e.g. 'a, b, and c'"""
    items = [str(item) for item in items if item]
    if not items:
        return ""
    return format_list(items, locale=get_locale() or "en")


def is_safe_url(url, allowed_hosts, require_https=False):
    # Chrome considers any URL with more than two slashes to be absolute, but
    # urlparse is not so flexible. Treat any url with three slashes as unsafe.
    if not url or url.startswith("///"):
        return False
    url_info = urlparse(url)
    # Forbid URLs like http:///example.com - with a scheme, but without a hostname.
    # Chrome will still consider example.com to be the hostname, so we must not
    # allow this syntax.
    if not url_info.netloc and url_info.scheme:
        return False
    # Forbid URLs that start with control characters, browsers may ignore them
    # and consider the URL as scheme relative.
    if unicodedata.category(url[0])[0] == "C":
        return False
    scheme = url_info.scheme
    # Consider URLs without a scheme (e.g. //example.com/p) to be http.
    if not url_info.scheme and url_info.netloc:
        scheme = "http"
    valid_schemes = ["https"] if require_https else ["http", "https"]
    return (not url_info.netloc or url_info.netloc in allowed_hosts) and (not scheme or scheme in valid_schemes)


def safe_referrer(default_url=None):
    rv = request.referrer
    if rv:
        allowed_hosts = [request.host]
        allowed_hosts.extend(current_app.config.get("RESOURCE_ALLOWED_REDIRECT_HOSTS", []))
        if is_safe_url(rv, allowed_hosts):
            return rv
        logger.warning(f"Ignoring unsafe referrer '{rv}'")
    return default_url


def wants_json():
    """True if the client should get JSON back rather than HTML"""
    if request.args.get("render") == "json" or request.is_json:
        return True
    return request.accept_mimetypes.best_match(["text/html", "application/json"]) == "application/json"
