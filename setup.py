#!/usr/bin/env python
from setuptools import find_packages, setup

setup(
    name='resourceful',
    version='0.1.0',
    description='Generic CRUD views for Flask and MongoEngine',
    author='Helmgast AB',
    author_email='info@helmgast.se',
    url='http://helmgast.se',
    packages=find_packages(include=['resourceful', 'resourceful.*']),
    include_package_data=True,
    package_data={'resourceful': ['templates/*.html']},
    python_requires='>=3.8',

    #  Packages required to run Resourceful, keep in sync with requirements.txt
    install_requires=[
        'Flask>=2.3',
        'Flask-Classful>=0.16',
        'Flask-Babel>=3.0',
        'Flask-WTF>=1.1',
        'Babel>=2.12',
        'mongoengine>=0.27',
        'pymongo>=4.0',
        'inflect>=6.0',
        'sentry-sdk[flask]>=1.30',
        'Werkzeug>=2.3',
    ],
    extras_require={
        'test': ['pytest>=7.0', 'mongomock>=4.1'],
    },

    # Configures babel so we translate direct for setup.py.
    # "." means local directory - settings need to be specified per directory
    message_extractors={
        'resourceful': [
            ('**.py', 'python', None),
            ('**/templates/**.html', 'jinja2', None),
        ],
    },
)
