from flask import g
from flask.testing import FlaskClient
import pytest


@pytest.fixture
def mongomock():
    import mongomock as mm
    from mongoengine import connect, disconnect

    disconnect()
    yield connect("resourcefultest", host="mongodb://localhost", mongo_client_class=mm.MongoClient)
    disconnect()


@pytest.fixture
def app_client() -> FlaskClient:
    # WTF_CSRF_CHECK_DEFAULT turn off all CSRF, test that in specific case only
    from resourceful.app import create_app

    app = create_app(TESTING=True, WTF_CSRF_CHECK_DEFAULT=False)
    app.test_user = None

    # Stands in for the host application's authentication
    @app.before_request
    def load_user():
        g.user = app.test_user

    with app.test_client() as client:
        yield client
