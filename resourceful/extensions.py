from urllib.parse import parse_qs

from babel import Locale
from bson.objectid import ObjectId
from flask import request
from flask.json.provider import DefaultJSONProvider
from flask_babel import Babel
from flask_babel.speaklater import LazyString
from flask_wtf import CSRFProtect
from mongoengine import Document, EmbeddedDocument, QuerySet


babel = Babel()
csrf = CSRFProtect()

configured_locales = {}
default_locale = None


class MethodRewriteMiddleware(object):
    """Rewrites POST with url arg ?method=put|patch|delete into a proper PUT, PATCH, DELETE,
    as HTML forms can only send GET and POST."""

    applied_methods = ["PUT", "PATCH", "DELETE"]

    def __init__(self, app):
        self.app = app

    def __call__(self, environ, start_response):
        if environ["REQUEST_METHOD"] == "POST":
            args = parse_qs(environ.get("QUERY_STRING", ""))
            method = args.get("method", [""])[0].upper()
            if method and method in self.applied_methods:
                environ["REQUEST_METHOD"] = method
        return self.app(environ, start_response)


class MongoJSONProvider(DefaultJSONProvider):
    @staticmethod
    def default(o):
        if isinstance(o, (Document, EmbeddedDocument)):
            return o.to_mongo().to_dict()
        elif isinstance(o, QuerySet):
            return [d.to_mongo().to_dict() for d in o]
        elif isinstance(o, ObjectId):
            return str(o)
        if isinstance(o, LazyString):  # i18n Babel uses lazy strings, need to be treated as string here
            return str(o)
        return DefaultJSONProvider.default(o)


def setup_locales(app):
    global configured_locales
    global default_locale

    default_locale = Locale.parse(app.config.get("BABEL_DEFAULT_LOCALE", "en_US"))
    configured_locales = {k: Locale.parse(k) for k in app.config.get("BABEL_AVAILABLE_LOCALES")}


def pick_locale():
    # Language part of each configured locale, e.g. en_US matches a browser asking for en
    langs = {loc.language: code for code, loc in configured_locales.items()}
    best = request.accept_languages.best_match(list(configured_locales.keys()) + list(langs.keys()))
    if best in configured_locales:
        return best
    return langs.get(best)  # None makes babel choose its default locale
