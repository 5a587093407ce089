"""
  resourceful.api.resource
  ~~~~~~~~~~~~~~~~

  Generic CRUD request handling for MongoEngine documents served by Flask-Classful
  views. A view names its resource (or lets it be inferred from the view's own name),
  lists the parameters that may be mass-assigned and picks an access policy, and
  then gets index, show, new, edit, create, update and destroy actions where record
  lookup, authorization and the response are done the same way for every model.

"""
import logging
import re
from collections import namedtuple

from flask import abort, current_app, flash, g, jsonify, make_response, redirect, render_template, request, url_for
from flask_babel import gettext
from flask_babel import lazy_gettext as _
from flask_classful import FlaskView, route
from mongoengine import BooleanField, DateTimeField, DecimalField, FloatField, IntField
from mongoengine.base import get_document
from mongoengine.errors import NotRegistered, NotUniqueError, OperationError, ValidationError
from werkzeug.exceptions import NotFound

from resourceful.model.misc import (
    EMPTY_ID,
    camelize,
    demodulize,
    humanize,
    namespace_re,
    pluralize,
    safe_referrer,
    singularize,
    to_sentence,
    translate,
    underscore,
    wants_json,
)

logger = current_app.logger if current_app else logging.getLogger(__name__)

nested_param_re = re.compile(r"^(?P<key>[^\[\]]+)\[(?P<field>[^\[\]]+)\](?P<multi>\[\])?$")

COMPLETED_MESSAGE = _("Successfully completed.")
DELETED_MESSAGE = _("Successfully deleted.")


class ResourceError(Exception):
    """A resource view that is set up wrong, or that was run in a way that skipped a
    security check. These are programming errors and end up as server errors."""

    status_code = 500


class UnresolvableResourceType(ResourceError, LookupError):
    pass


class PermittedParamsNotDeclared(ResourceError, NotImplementedError):
    pass


class AuthorizationNotPerformed(ResourceError):
    pass


class PolicyScopingNotPerformed(ResourceError):
    pass


class RecordNotFound(NotFound):
    def __init__(self, model, field, value):
        self.model = model
        self.field = field
        self.value = value
        super(RecordNotFound, self).__init__(
            gettext("%(model)s with %(field)s %(value)s not found", model=model.__name__, field=field, value=value)
        )


class Authorization(object):
    def __init__(self, is_authorized, message="", privileged=False, error_code=403):
        self.is_authorized = is_authorized
        self.message = message
        self.error_code = error_code
        # Privileged means that this authorization would not apply to the public
        # or a normal user. E.g. a user can only edit their own documents (privilege),
        # or an admin can see everything
        self.privileged = privileged

    def __repr__(self):
        return "%s%s" % (
            "Authorized" if self.is_authorized else "UNAUTHORIZED",
            ": %s" % self.message if self.message else "",
        )

    def is_privileged(self):
        return self.privileged

    def __bool__(self):
        return self.is_authorized


# Checks if user is authorized to access this resource
class ResourceAccessPolicy(object):
    translate = {
        "post": "new",
        "create": "new",
        "patch": "edit",
        "put": "edit",
        "update": "edit",
        "index": "list",
        "get": "view",
        "show": "view",
        "destroy": "delete",
    }
    new_allowed = Authorization(False, _("Creating new resource is not allowed"), error_code=403)

    def authorize(self, op, user=None, res=None):
        op = self.translate.get(op, op)
        if user is None:
            user = g.get("user")

        if op == "list":
            return Authorization(True, _("List is allowed"))

        if op == "new":
            return self.is_user(op, user, res) and (self.is_admin(op, user, res) or self.new_allowed)

        if op == "view":
            if res is None:
                return Authorization(True, _("Viewing an empty form is allowed"))
            return (
                self.is_resource_public(op, res)
                or self.is_user(op, user, res)
                and (self.is_admin(op, user, res) or self.is_editor(op, user, res) or self.is_reader(op, user, res))
            )

        if op == "edit" or op == "delete":
            if res is None:
                return Authorization(False, _("Can't edit/delete a None resource"), error_code=403)
            return self.is_user(op, user, res) and (self.is_admin(op, user, res) or self.is_editor(op, user, res))

        return self.custom_auth(op, user, res)

    def scope(self, op, query, user=None):
        """Narrows a query to the documents the user may see. Lets everything through by default."""
        return query

    def is_user(self, op, user, res):
        msg = _("%(op)s requires a logged in user", op=op)
        if user:
            return Authorization(True, msg)
        else:
            return Authorization(False, msg, error_code=401)  # 401 means unauthenticated, should log in first

    def is_admin(self, op, user, res):
        if user and getattr(user, "admin", False):
            return Authorization(True, _("%(user)s is an admin", user=user), privileged=True)
        else:
            return Authorization(False, _("Need to be logged in with admin access"), error_code=403)

    def is_resource_public(self, op, res):
        return Authorization(False, _("This resource does not support to be public"), error_code=403)

    def is_reader(self, op, user, res):
        return Authorization(False, _("Access rules for readers are undefined and therefore denied"), error_code=403)

    def is_editor(self, op, user, res):
        return Authorization(False, _("Access rules for editors are undefined and therefore denied"), error_code=403)

    def custom_auth(self, op, user, res):
        return Authorization(False, _("No authorization implemented for %(op)s", op=op), error_code=403)


class OwnerAccessPolicy(ResourceAccessPolicy):
    """Users may create documents, and see and edit the ones where they are the `owner`."""

    new_allowed = Authorization(True, _("Creating new resource is allowed"))

    def is_editor(self, op, user, res):
        if user is not None and getattr(res, "owner", None) == user:
            return Authorization(
                True, _('Allowed access to %(op)s "%(res)s" as owner', op=op, res=res), privileged=True
            )
        else:
            return Authorization(False, _('Not allowed access to %(op)s "%(res)s" as not the owner', op=op, res=res))

    def scope(self, op, query, user=None):
        if user is None:
            user = g.get("user")
        if not user:
            return query.filter(id=EMPTY_ID)
        if getattr(user, "admin", False):
            return query
        return query.filter(owner=user)


def resource_path(view):
    """The path a view is named by, e.g. ArticlesView -> articles, unless it declares one like admin/articles"""
    if getattr(view, "resource_path", None):
        return view.resource_path
    name = view.__name__ if isinstance(view, type) else type(view).__name__
    for suffix in ("View", "Controller"):
        if name.endswith(suffix) and name != suffix:
            name = name[: -len(suffix)]
            break
    return underscore(name)


def resolve_resource_type(view):
    """Finds the document class a view manages. A declared `model` wins, otherwise the view's
    path is stripped of namespace, singularized and looked up in the MongoEngine registry."""
    model = getattr(view, "model", None)
    if model is not None:
        return model
    path = resource_path(view)
    type_name = camelize(singularize(demodulize(path)))
    if not type_name:
        raise UnresolvableResourceType(f"Can't derive a resource type from '{path}'")
    try:
        return get_document(type_name)
    except NotRegistered as err:
        raise UnresolvableResourceType(
            f"No document class '{type_name}' for resource path '{path}', declare `model` on the view"
        ) from err


def _type_name(model):
    # MongoEngine names inherited documents like Parent.Child
    return namespace_re.sub("_", underscore(getattr(model, "_class_name", model.__name__)))


def resource_name(model):
    return pluralize(_type_name(model))


def member_name(model):
    # Document classes are named in singular
    return _type_name(model)


class ResourceConfig(object):
    """The names and lookup rules for the resource of one view, resolved once when the view is registered"""

    def __init__(self, model, identifier="id", param_key=None):
        self.model = model
        self.resource_name = resource_name(model)
        self.member_name = member_name(model)
        self.identifier = identifier
        self.param_key = param_key or self.resource_name

    @classmethod
    def for_view(cls, view):
        return cls(
            resolve_resource_type(view),
            identifier=getattr(view, "record_param_identifier", "id"),
            param_key=getattr(view, "param_key", None),
        )

    def __repr__(self):
        return f"<ResourceConfig {self.model.__name__} as {self.resource_name}/{self.member_name}>"


class ResourceContext(object):
    """What the current request has resolved and checked. Kept on flask.g, so it is gone after the request."""

    def __init__(self, config, action):
        self.config = config
        self.action = action
        self.record = None
        self.records = None
        self.authorization = None
        self.scoped = False
        self.errors = []

    def template_args(self):
        rv = {self.config.resource_name: self.records}
        # Uncountable names (e.g. news) are the same in singular and plural
        if self.record is not None or self.config.member_name not in rv:
            rv[self.config.member_name] = self.record
        # Fixed names win over a resource called e.g. Error or Action
        rv.update(
            resource_config=self.config,
            action=self.action,
            record=self.record,
            records=self.records,
            errors=self.errors,
        )
        return rv


Action = namedtuple("Action", "loader op")

ACTIONS = {
    "index": Action("_set_records", "list"),
    "show": Action("_set_record", "view"),
    "new": Action("_set_new_record", "new"),
    "edit": Action("_set_record", "edit"),
    "create": Action("_set_new_record", "new"),
    "update": Action("_set_record", "edit"),
    "destroy": Action("_set_record", "delete"),
}


def nested_params(key):
    """Request parameters nested under key, either from a JSON body {key: {...}} or from
    form and url args named key[field] (key[field][] for lists)"""
    if request.is_json:
        body = request.get_json(silent=True)
        nested = body.get(key) if isinstance(body, dict) else None
        return dict(nested) if isinstance(nested, dict) else {}
    rv = {}
    for name, values in request.values.lists():
        m = nested_param_re.match(name)
        if m and m.group("key") == key:
            rv[m.group("field")] = values if m.group("multi") else values[-1]
    return rv


FALSE_VALUES = frozenset(["", "0", "false", "off", "no"])
CONVERTED_FIELDS = (IntField, FloatField, DecimalField, DateTimeField)


def convert_value(field, value):
    """Turns text from a form or url into what the document field holds, e.g. 'false' into False for a
    BooleanField. Text that does not convert is left as it is, for validation to report."""
    if isinstance(value, list):
        inner = getattr(field, "field", None)
        return [convert_value(inner, v) for v in value] if inner is not None else value
    if field is None or not isinstance(value, str):
        return value
    if isinstance(field, BooleanField):
        return value.strip().lower() not in FALSE_VALUES
    if isinstance(field, CONVERTED_FIELDS):
        return field.to_python(value) if value.strip() else None
    return value


def convert_params(model, params):
    return {name: convert_value(model._fields.get(name), value) for name, value in params.items()}


def field_label(field, name):
    return str(getattr(field, "verbose_name", None) or humanize(name))


def _flatten_errors(fields, errors, path=""):
    for name, error in errors.items():
        field = fields.get(name) if fields else None
        label = f"{path}{field_label(field, name)}"
        if isinstance(error, dict):
            document_type = getattr(field, "document_type", None)
            yield from _flatten_errors(getattr(document_type, "_fields", None), error, f"{label}/")
        else:
            yield f"{label}: {getattr(error, 'message', error)}"


def error_messages(record, err):
    """Human readable messages for an error from saving a record, prefixed with the field they concern"""
    if isinstance(err, NotUniqueError):
        msg = str(err)
        # Index names in duplicate key errors are like slug_1
        for name, field in record._fields.items():
            if re.search(rf"\b{re.escape(field.db_field)}_-?1\b", msg):
                return [
                    gettext(
                        "%(field)s needs to be unique and another resource already has this value",
                        field=field_label(field, name),
                    )
                ]
        return [gettext("Needs to be unique and another resource already has this value")]
    if isinstance(err, ValidationError) and err.errors:
        return list(_flatten_errors(record._fields, err.errors))
    return [getattr(err, "message", None) or str(err)]


class CrudMixin(object):
    """CRUD actions for a Flask-Classful view. Combine with FlaskView (or use ResourceView) and declare
    at least `permitted_params`. Helpers are underscored, as FlaskView routes every public method."""

    model = None  # Inferred from the view name if not set
    resource_path = None  # E.g. admin/articles, inferred from the view name if not set
    param_key = None  # Request parameters are nested under this key, defaults to the resource name
    record_param_identifier = "id"  # Field matched against the <id> part of the URL
    access_policy = ResourceAccessPolicy()
    permitted_params = None  # Must be declared, there is no safe default
    new_record_defaults = None
    skip_authorization_actions = frozenset()
    skip_policy_scope_actions = frozenset(["new", "create"])
    resource_config = None

    @classmethod
    def register(cls, app, *args, **kwargs):
        cls.resource_config = ResourceConfig.for_view(cls)
        return super(CrudMixin, cls).register(app, *args, **kwargs)

    def before_request(self, name, *args, **kwargs):
        g.resource_context = ResourceContext(self.resource_config, name)
        action = ACTIONS.get(name)
        if action:
            getattr(self, action.loader)()

    def after_request(self, name, response):
        """Fails loudly if an action got this far without being authorized, or without scoping its query"""
        ctx = g.get("resource_context")
        if not self._skip_authorization(name) and (ctx is None or ctx.authorization is None):
            raise AuthorizationNotPerformed(f"{type(self).__name__}:{name} did not perform authorization")
        if not self._skip_policy_scope(name) and (ctx is None or not ctx.scoped):
            raise PolicyScopingNotPerformed(f"{type(self).__name__}:{name} did not scope its query")
        return response

    @route("/", methods=["GET"])
    def index(self):
        return self._render()

    @route("/new/", methods=["GET"])
    def new(self):
        return self._render()

    @route("/<id>/", methods=["GET"])
    def show(self, id):
        return self._render()

    @route("/<id>/edit/", methods=["GET"])
    def edit(self, id):
        return self._render()

    @route("/", methods=["POST"])
    def create(self):
        return self._respond(self._save_record(), "new", self._after_create_path)

    @route("/<id>/", methods=["PUT", "PATCH"])
    def update(self, id):
        return self._respond(self._update_record(self._record_params()), "edit", self._after_update_path)

    @route("/<id>/", methods=["DELETE"])
    def destroy(self, id):
        if self._destroy_record():
            flash(translate(self._message_key("success"), DELETED_MESSAGE), "success")
        return redirect(self._after_destroy_path())

    # ----- Override points ----- #

    def _permitted_params(self):
        if self.permitted_params is None:
            raise PermittedParamsNotDeclared(
                f"{type(self).__name__} must declare `permitted_params`, the fields a request may assign"
            )
        return self.permitted_params

    def _new_record_defaults(self):
        return dict(self.new_record_defaults or {})

    def _after_create_path(self):
        return None

    def _after_update_path(self):
        return None

    def _after_destroy_path(self):
        endpoint = type(self).build_route_name("index")
        if request.blueprint:
            endpoint = f"{request.blueprint}.{endpoint}"
        return url_for(endpoint)

    def _skip_authorization(self, name):
        return name in self.skip_authorization_actions

    def _skip_policy_scope(self, name):
        return name in self.skip_policy_scope_actions

    def _current_user(self):
        return g.get("user")

    # ----- The following methods shouldn't be overridden in the view ----- #

    @property
    def _context(self):
        return g.resource_context

    @property
    def _record(self):
        return self._context.record

    def _op(self):
        action = ACTIONS.get(self._context.action)
        return action.op if action else self._context.action

    def _record_params(self):
        permitted = frozenset(self._permitted_params())
        params = {k: v for k, v in nested_params(self.resource_config.param_key).items() if k in permitted}
        return convert_params(self.resource_config.model, params)

    def _authorize(self, res, op=None):
        user = self._current_user()
        auth = self.access_policy.authorize(op or self._op(), user=user, res=res)
        if not auth:
            if user:
                logger.warning('User "{user}" unauthorized "{msg}"'.format(user=user, msg=auth.message))
            abort(auth.error_code, str(auth.message))
        self._context.authorization = auth
        return auth

    def _policy_scope(self, model, op=None):
        query = self.access_policy.scope(op or self._op(), model.objects, user=self._current_user())
        self._context.scoped = True
        return query

    def _set_record(self):
        config = self.resource_config
        value = (request.view_args or {}).get("id")
        query = self._policy_scope(config.model)
        try:
            record = query.filter(**{config.identifier: value}).first()
        except ValidationError:
            record = None  # Malformed identifier, e.g. not an ObjectId
        if record is None:
            raise RecordNotFound(config.model, config.identifier, value)
        self._context.record = record
        self._authorize(record)

    def _set_records(self):
        records = self._policy_scope(self.resource_config.model)
        self._context.records = records
        self._authorize(records)

    def _set_new_record(self):
        params = self._record_params()
        record = self.resource_config.model(**self._new_record_defaults())
        self._assign(record, params)
        self._context.record = record
        self._authorize(record)

    def _save_record(self):
        record = self._record
        try:
            record.save()
        except (NotUniqueError, ValidationError) as err:
            self._context.errors = error_messages(record, err)
            logger.info(
                "%s could not save %s: %s", self._current_user() or "System", self.resource_config.member_name, err
            )
            return False
        logger.info("%s saved %s %s", self._current_user() or "System", self.resource_config.member_name, record.pk)
        return True

    def _assign(self, record, params):
        for field, value in params.items():
            setattr(record, field, value)

    def _update_record(self, params):
        self._assign(self._record, params)
        return self._save_record()

    def _destroy_record(self):
        record = self._record
        try:
            record.delete()
        except OperationError as err:
            logger.warning("Could not delete %s %s: %s", self.resource_config.member_name, record.pk, err)
            return False
        logger.info("%s deleted %s %s", self._current_user() or "System", self.resource_config.member_name, record.pk)
        return True

    def _message_key(self, suffix):
        return f"{self.resource_config.resource_name}.{self._context.action}.{suffix}"

    def _template_for(self, action):
        return getattr(self, f"{action}_template", None) or f"{self.resource_config.resource_name}/{action}.html"

    def _render(self, action=None, status=200):
        ctx = self._context
        if wants_json():
            if ctx.record is None and ctx.records is not None:
                body = jsonify({self.resource_config.resource_name: list(ctx.records)})
            else:
                body = jsonify({self.resource_config.member_name: ctx.record})
            return make_response(body, status)
        return make_response(render_template(self._template_for(action or ctx.action), **ctx.template_args()), status)

    def _respond(self, success, template, path_hook):
        if wants_json():
            return self._json_response(success)
        return self._html_response(success, template, path_hook)

    def _html_response(self, success, template, path_hook):
        if success:
            flash(translate(self._message_key("success"), COMPLETED_MESSAGE), "success")
            path = path_hook()
            if path:
                return redirect(path)
            return redirect(safe_referrer(current_app.config.get("RESOURCE_ROOT_URL", "/")))
        flash(to_sentence(self._context.errors), "danger")
        return self._render(template, status=400)

    def _json_response(self, success):
        if success:
            return make_response(jsonify(success=True, record=self._record))
        return make_response(jsonify(success=False, errors=to_sentence(self._context.errors)), 400)


class ResourceView(CrudMixin, FlaskView):
    pass
