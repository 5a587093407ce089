"""
  resourceful.app
  ~~~~~~~~~~~~~~~~

  Application factory that sets up config, logging, extensions and error
  handlers for serving resource views. Views are registered by the host
  application, e.g. ArticlesView.register(app).

"""

import os
from logging import DEBUG, INFO, Formatter, StreamHandler

import sentry_sdk
from flask import Flask, has_request_context, jsonify, render_template, request
from flask.config import Config
from flask.logging import wsgi_errors_stream
from mongoengine import connect
from mongoengine.connection import ConnectionFailure
from sentry_sdk.integrations.flask import FlaskIntegration
from werkzeug.exceptions import InternalServerError
from werkzeug.middleware.proxy_fix import ProxyFix

from resourceful.model.misc import wants_json


def create_app(**kwargs):

    # Creates new flask instance
    the_app = Flask("resourceful")

    from . import default_config

    the_app.config.from_object(default_config.Config)  # Default config that applies to all deployments
    the_app.config.from_object(default_config.SecretConfig)  # Add dummy secrets

    # 1. Load specific configuration in the following order, so that last applies local config.py
    fileconfig = Config(the_app.root_path)
    fileconfig.from_pyfile("../config.py", silent=True)
    the_app.config.update(fileconfig)

    # 2. Environment variables (only if exist in default)
    envconfig = Config(the_app.root_path)
    for k in the_app.config.keys():
        env_k = "RESOURCEFUL_%s" % k
        if env_k in os.environ:
            env_v = os.environ[env_k]
            if str(env_v).lower() in ["true", "false"]:
                env_v = str(env_v).lower() == "true"
            envconfig[k] = env_v
    the_app.config.update(envconfig)

    # 3. Arguments from run function (only if exist in default)
    argconfig = Config(the_app.root_path)
    for k in kwargs.keys():
        if k in the_app.config:
            argconfig[k] = kwargs[k]
    the_app.config.update(argconfig)

    config_msg = ""
    # 4. Check if running in production or not
    if the_app.config["PRODUCTION"]:
        # Make sure we don't debug in production
        the_app.debug = False
        # Show a sanitized config output in justified columns
        width = max(map(len, (argconfig.keys() | envconfig.keys() | fileconfig.keys() | {""})))

        def sanitize(k, v):
            return "***" if getattr(default_config.SecretConfig, k, None) else v

        for k in the_app.config:
            if k in argconfig:
                config_msg += f"{k.ljust(width)}(args) = {sanitize(k, argconfig[k])}\n"
            elif k in envconfig:
                config_msg += f"{k.ljust(width)}(env)  = {sanitize(k, envconfig[k])}\n"
            elif k in fileconfig:
                config_msg += f"{k.ljust(width)}(file) = {sanitize(k, fileconfig[k])}\n"
    else:
        the_app.debug = the_app.config["DEBUG"]

    configure_logging(the_app)
    if not the_app.testing:
        the_app.logger.info(
            "Resourceful (%s) started. Mode: %s%s:\n%s"
            % (
                the_app.config.get("VERSION", None),
                "Prod" if the_app.config["PRODUCTION"] else "Dev",
                " (Debug)" if the_app.debug else "",
                config_msg,
            )
        )

    # Configure all extensions
    configure_extensions(the_app)

    configure_hooks(the_app)

    return the_app


def configure_logging(app):
    # Custom logging that always goes to stderr
    logger = app.logger

    class RequestFormatter(Formatter):
        def format(self, record):
            record.url = request.url if has_request_context() else ""
            return super().format(record)

    handler = StreamHandler(wsgi_errors_stream)
    handler.setFormatter(
        RequestFormatter("[%(asctime)s %(levelname)s in %(module)s:%(lineno)d] %(message)s (%(url)s)")
    )
    logger.handlers = [handler]  # Replace the otherwise auto-configured handler
    logger.setLevel(DEBUG if app.debug else INFO)
    sentry_dsn = app.config["SENTRY_DSN"]

    if app.config["PRODUCTION"]:
        if sentry_dsn and sentry_dsn != "SECRET":  # SECRET is default, non-set state
            sentry_sdk.init(
                dsn=sentry_dsn, integrations=[FlaskIntegration(transaction_style="url")], send_default_pii=True
            )
        else:
            app.logger.warning("Running without Sentry error monitoring; no SENTRY_DSN in config")


def configure_extensions(app):
    from . import extensions

    # Fixes IP address etc assuming we run behind proxy
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    # Rewrites POSTs with specific methods into the real method, to allow HTML forms to send PUT, DELETE, etc
    app.wsgi_app = extensions.MethodRewriteMiddleware(app.wsgi_app)

    # Internationalization, automatically adds the extension to Jinja as well
    extensions.setup_locales(app)
    if app.config.get("BABEL_DEFAULT_LOCALE") not in extensions.configured_locales:
        raise ValueError("Incorrectly configured locales")
    extensions.babel.init_app(app, locale_selector=extensions.pick_locale)

    # Secure forms
    extensions.csrf.init_app(app)

    app.json = extensions.MongoJSONProvider(app)

    if not app.testing:
        # Connecting is lazy in pymongo, so this won't fail if the database is not up yet
        connect(host=app.config["MONGODB_HOST"], serverSelectionTimeoutMS=app.config["MONGODB_CONNECT_TIMEOUT_MS"])


def error_response(err, status):
    description = getattr(err, "description", None) or str(err)
    if wants_json():
        return jsonify(error=description, status=status), status
    return render_template("error.html", error=description, status=status), status


def configure_hooks(app):
    from resourceful.api.resource import ResourceError

    @app.errorhandler(401)  # Unauthorized or unauthenticated, e.g. not logged in
    def unauthorized(err):
        return error_response(err, 401)

    @app.errorhandler(403)
    def forbidden(err):
        return error_response(err, 403)

    @app.errorhandler(404)
    def not_found(err):
        return error_response(err, 404)

    @app.errorhandler(ConnectionFailure)
    def db_error(err):
        app.logger.error("Database Connection Failure: {err}".format(err=err))
        return error_response(InternalServerError(), 500)

    @app.errorhandler(ResourceError)
    def resource_error(err):
        app.logger.error("%s: %s", type(err).__name__, err)
        return error_response(InternalServerError(), err.status_code)

    @app.errorhandler(500)
    def server_error(err):
        return error_response(err, 500)
