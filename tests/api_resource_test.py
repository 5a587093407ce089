import datetime

import pytest
from flask import g
from mongoengine import (
    BooleanField,
    DateTimeField,
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    FloatField,
    IntField,
    ListField,
    ReferenceField,
    StringField,
)
from mongoengine.errors import NotUniqueError, OperationError, ValidationError

from resourceful.api.resource import (
    ACTIONS,
    Authorization,
    OwnerAccessPolicy,
    PermittedParamsNotDeclared,
    RecordNotFound,
    ResourceAccessPolicy,
    ResourceConfig,
    ResourceContext,
    ResourceError,
    ResourceView,
    UnresolvableResourceType,
    convert_params,
    convert_value,
    error_messages,
    member_name,
    nested_params,
    resolve_resource_type,
    resource_name,
    resource_path,
)


class Member(Document):
    username = StringField()
    admin = BooleanField(default=False)

    def __str__(self):
        return self.username


class Address(EmbeddedDocument):
    street = StringField(required=True)
    zip_code = StringField(max_length=5, verbose_name="Postal code")


class BlogPost(Document):
    title = StringField(required=True, verbose_name="Headline")
    slug = StringField(unique=True)
    author_id = StringField(required=True)
    address = EmbeddedDocumentField(Address)
    owner = ReferenceField(Member)


class Asset(Document):
    meta = {"allow_inheritance": True}


class ImageAsset(Asset):
    pass


class Business(Document):
    name = StringField()


class Status(Document):
    text = StringField()


class Error(Document):
    message = StringField()


class Action(Document):
    name = StringField()


class Gadget(Document):
    name = StringField()
    active = BooleanField(default=True)
    count = IntField()
    weight = FloatField()
    made = DateTimeField()
    flags = ListField(BooleanField())
    tags = ListField(StringField())


class BlogPostsView(ResourceView):
    pass


class BlogPostsController(ResourceView):
    pass


class NamespacedView(ResourceView):
    resource_path = "admin/blog_posts"


class DeclaredView(ResourceView):
    model = BlogPost
    resource_path = "unicorns"
    record_param_identifier = "slug"
    param_key = "post"


class UnicornsView(ResourceView):
    pass


def test_resource_path():
    assert resource_path(BlogPostsView) == "blog_posts"
    assert resource_path(BlogPostsController) == "blog_posts"
    assert resource_path(NamespacedView) == "admin/blog_posts"
    assert resource_path(BlogPostsView()) == "blog_posts"


def test_resolve_resource_type_from_view_name():
    assert resolve_resource_type(BlogPostsView) is BlogPost
    assert resolve_resource_type(BlogPostsController) is BlogPost


def test_resolve_resource_type_strips_namespace():
    assert resolve_resource_type(NamespacedView) is BlogPost


def test_resolve_resource_type_prefers_declared_model():
    # Declared model wins even if the path names something unknown
    assert resolve_resource_type(DeclaredView) is BlogPost


def test_resolve_resource_type_unknown():
    with pytest.raises(UnresolvableResourceType) as excinfo:
        resolve_resource_type(UnicornsView)
    assert "Unicorn" in str(excinfo.value)
    assert isinstance(excinfo.value, LookupError)
    assert isinstance(excinfo.value, ResourceError)


def test_unresolvable_view_fails_at_registration(app_client):
    with pytest.raises(UnresolvableResourceType):
        UnicornsView.register(app_client.application)


def test_resource_and_member_names():
    assert resource_name(BlogPost) == "blog_posts"
    assert member_name(BlogPost) == "blog_post"
    assert resource_name(Member) == "members"
    assert member_name(Member) == "member"
    # Inherited documents are named with their parent
    assert resource_name(ImageAsset) == "asset_image_assets"
    assert member_name(ImageAsset) == "asset_image_asset"
    # Singular names ending in s
    assert resource_name(Address) == "addresses"
    assert member_name(Address) == "address"
    assert resource_name(Business) == "businesses"
    assert member_name(Business) == "business"
    assert resource_name(Status) == "statuses"
    assert member_name(Status) == "status"


def test_resource_config_defaults():
    config = ResourceConfig.for_view(BlogPostsView)
    assert config.model is BlogPost
    assert config.resource_name == "blog_posts"
    assert config.member_name == "blog_post"
    assert config.identifier == "id"
    assert config.param_key == "blog_posts"
    assert repr(config) == "<ResourceConfig BlogPost as blog_posts/blog_post>"


def test_resource_config_declared():
    config = ResourceConfig.for_view(DeclaredView)
    assert config.model is BlogPost
    assert config.identifier == "slug"
    assert config.param_key == "post"


def test_resource_context_template_args():
    ctx = ResourceContext(ResourceConfig(BlogPost), "show")
    record = BlogPost(title="Hello")
    ctx.record = record
    args = ctx.template_args()
    assert args["blog_post"] is record
    assert args["record"] is record
    assert args["blog_posts"] is None
    assert args["action"] == "show"
    assert args["errors"] == []
    assert args["resource_config"] is ctx.config
    assert not ctx.scoped
    assert ctx.authorization is None


def test_actions_table():
    assert set(ACTIONS) == {"index", "show", "new", "edit", "create", "update", "destroy"}
    assert ACTIONS["index"] == ("_set_records", "list")
    assert ACTIONS["create"].loader == "_set_new_record"
    assert ACTIONS["create"].op == "new"
    assert ACTIONS["update"].op == "edit"
    assert ACTIONS["destroy"].op == "delete"
    for action in ("show", "edit", "update", "destroy"):
        assert ACTIONS[action].loader == "_set_record"


def test_nested_params_from_form(app_client):
    data = {
        "blog_posts[title]": "Hello",
        "blog_posts[tags][]": ["a", "b"],
        "blog_posts[slug]": "hello",
        "other[title]": "Not mine",
        "title": "Not nested",
    }
    with app_client.application.test_request_context("/", method="POST", data=data):
        params = nested_params("blog_posts")
    assert params == {"title": "Hello", "tags": ["a", "b"], "slug": "hello"}


def test_nested_params_from_query(app_client):
    with app_client.application.test_request_context("/?blog_posts[title]=Prefilled"):
        assert nested_params("blog_posts") == {"title": "Prefilled"}


def test_nested_params_from_json(app_client):
    body = {"blog_posts": {"title": "Hello", "tags": ["a"]}, "title": "Not nested"}
    with app_client.application.test_request_context("/", method="POST", json=body):
        assert nested_params("blog_posts") == {"title": "Hello", "tags": ["a"]}


def test_nested_params_missing(app_client):
    with app_client.application.test_request_context("/", method="POST", json={"other": {"a": 1}}):
        assert nested_params("blog_posts") == {}
    with app_client.application.test_request_context("/", method="POST", json=["blog_posts"]):
        assert nested_params("blog_posts") == {}
    with app_client.application.test_request_context("/", method="POST", json={"blog_posts": "title"}):
        assert nested_params("blog_posts") == {}
    with app_client.application.test_request_context("/", method="POST", data={"title": "x"}):
        assert nested_params("blog_posts") == {}


def test_error_messages_validation(app_client):
    post = BlogPost(address=Address(zip_code="1234567"))
    with pytest.raises(ValidationError) as excinfo:
        post.validate()
    with app_client.application.test_request_context("/"):
        messages = error_messages(post, excinfo.value)
    assert "Headline: Field is required" in messages
    assert "Author: Field is required" in messages
    assert "Address/Street: Field is required" in messages
    assert any(m.startswith("Address/Postal code: ") for m in messages)
    assert len(messages) == 4


def test_error_messages_not_unique(app_client):
    post = BlogPost(title="Hello", slug="hello")
    err = NotUniqueError(
        "Tried to save duplicate unique keys (E11000 duplicate key error collection: test.blog_post "
        'index: slug_1 dup key: { slug: "hello" })'
    )
    with app_client.application.test_request_context("/"):
        assert error_messages(post, err) == ["Slug needs to be unique and another resource already has this value"]
        assert error_messages(post, NotUniqueError("duplicate")) == [
            "Needs to be unique and another resource already has this value"
        ]


def test_error_messages_other(app_client):
    post = BlogPost(title="Hello")
    with app_client.application.test_request_context("/"):
        assert error_messages(post, OperationError("Could not save")) == ["Could not save"]
        assert error_messages(post, ValidationError("Bad document")) == ["Bad document"]


def test_record_not_found(app_client):
    with app_client.application.test_request_context("/"):
        err = RecordNotFound(BlogPost, "slug", "missing")
    assert err.code == 404
    assert err.model is BlogPost
    assert "BlogPost with slug missing not found" == err.description


def test_permitted_params_not_declared(app_client):
    view = BlogPostsView()
    with app_client.application.test_request_context("/"):
        with pytest.raises(PermittedParamsNotDeclared):
            view._permitted_params()
    assert issubclass(PermittedParamsNotDeclared, NotImplementedError)


def test_authorization():
    auth = Authorization(True, "Go ahead")
    assert auth
    assert repr(auth) == "Authorized: Go ahead"
    assert not auth.is_privileged()

    denied = Authorization(False, "Stop", error_code=401)
    assert not denied
    assert repr(denied) == "UNAUTHORIZED: Stop"
    assert denied.error_code == 401

    assert repr(Authorization(True)) == "Authorized"


def test_access_policy(app_client):
    policy = ResourceAccessPolicy()
    user = Member(username="user")
    admin = Member(username="admin", admin=True)
    post = BlogPost(title="Hello")

    with app_client.application.test_request_context("/"):
        g.user = None
        assert policy.authorize("list")
        assert policy.authorize("index")
        assert policy.authorize("view")  # An empty form

        anonymous_new = policy.authorize("new")
        assert not anonymous_new
        assert anonymous_new.error_code == 401

        assert not policy.authorize("new", user=user)
        assert policy.authorize("create", user=admin)
        assert policy.authorize("post", user=admin).is_privileged()

        assert not policy.authorize("show", user=user, res=post)
        assert policy.authorize("get", user=admin, res=post)

        assert not policy.authorize("edit", user=admin)
        assert policy.authorize("patch", user=admin, res=post)
        assert not policy.authorize("put", user=user, res=post)
        assert policy.authorize("destroy", user=admin, res=post)
        assert policy.authorize("delete", user=None, res=post).error_code == 401

        assert not policy.authorize("publish", user=admin, res=post)

        # The user defaults to the one on the request
        g.user = admin
        assert policy.authorize("new")


def test_owner_access_policy(app_client):
    policy = OwnerAccessPolicy()
    owner = Member(username="owner")
    other = Member(username="other")
    post = BlogPost(title="Hello", owner=owner)

    with app_client.application.test_request_context("/"):
        g.user = None
        assert policy.authorize("new", user=other)
        assert not policy.authorize("new")
        assert policy.authorize("edit", user=owner, res=post).is_privileged()
        assert not policy.authorize("edit", user=other, res=post)
        assert policy.authorize("view", user=owner, res=post)
        assert not policy.authorize("view", user=other, res=post)


def test_owner_access_policy_scope(app_client, mongomock):
    policy = OwnerAccessPolicy()
    owner = Member(username="owner").save()
    other = Member(username="other").save()
    admin = Member(username="admin", admin=True).save()
    BlogPost(title="Mine", slug="mine", author_id="1", owner=owner).save()
    BlogPost(title="Theirs", slug="theirs", author_id="2", owner=other).save()

    with app_client.application.test_request_context("/"):
        g.user = None
        assert policy.scope("list", BlogPost.objects).count() == 0
        assert [p.title for p in policy.scope("list", BlogPost.objects, user=owner)] == ["Mine"]
        assert policy.scope("list", BlogPost.objects, user=admin).count() == 2

        g.user = other
        assert [p.title for p in policy.scope("list", BlogPost.objects)] == ["Theirs"]

    # The base policy lets everything through
    assert ResourceAccessPolicy().scope("list", BlogPost.objects, user=owner).count() == 2


def test_template_args_keep_fixed_names():
    ctx = ResourceContext(ResourceConfig(Error), "create")
    ctx.record = Error(message="Oops")
    ctx.errors = ["Message: Field is required"]
    args = ctx.template_args()
    assert args["errors"] == ["Message: Field is required"]
    assert args["error"] is ctx.record

    ctx = ResourceContext(ResourceConfig(Action), "show")
    ctx.record = Action(name="Run")
    args = ctx.template_args()
    assert args["action"] == "show"
    assert args["actions"] is None
    assert args["record"] is ctx.record


def test_template_args_for_collection():
    ctx = ResourceContext(ResourceConfig(Status), "index")
    ctx.records = ["first", "second"]
    args = ctx.template_args()
    assert args["statuses"] == ["first", "second"]
    assert args["status"] is None
    assert args["records"] == ["first", "second"]


@pytest.mark.parametrize(
    "value,expected",
    [("true", True), ("on", True), ("1", True), ("false", False), ("False", False), ("0", False), ("", False)],
)
def test_convert_boolean(value, expected):
    assert convert_value(Gadget.active, value) is expected


def test_convert_params():
    params = convert_params(
        Gadget,
        {
            "name": "Widget",
            "active": "off",
            "count": "3",
            "weight": "1.5",
            "made": "2020-01-02 10:00:00",
            "flags": ["true", "false"],
            "tags": ["0", "1"],
            "unknown": "false",
        },
    )
    assert params["name"] == "Widget"
    assert params["active"] is False
    assert params["count"] == 3
    assert params["weight"] == 1.5
    assert params["made"] == datetime.datetime(2020, 1, 2, 10, 0)
    assert params["flags"] == [True, False]
    assert params["tags"] == ["0", "1"]
    assert params["unknown"] == "false"


def test_convert_params_keeps_native_and_blank_values():
    params = convert_params(Gadget, {"active": False, "count": 4, "weight": "", "name": ""})
    assert params == {"active": False, "count": 4, "weight": None, "name": ""}
    # Text that doesn't convert is left for validation
    assert convert_params(Gadget, {"count": "many"}) == {"count": "many"}
