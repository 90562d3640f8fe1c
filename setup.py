# Always prefer setuptools over distutils
from setuptools import setup, find_packages
# To use a consistent encoding
from codecs import open
from os import path

from timeanchor import __version__

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='timeanchor',

    # Versions should comply with PEP440. The library and the client are
    # released together, so they share a version number.
    version=__version__,

    description='Create, upgrade and verify Bitcoin-anchored timestamp proofs',
    long_description=long_description,
    long_description_content_type='text/markdown',

    license='LGPL3',

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Security :: Cryptography',

        'License :: OSI Approved :: GNU Lesser General Public License v3 or later (LGPLv3+)',

        'Programming Language :: Python :: 3 :: Only',
    ],

    keywords='cryptography timestamping bitcoin',

    # Test suites live beside the code they test and are shipped with it.
    packages=find_packages(exclude=['contrib', 'docs']),

    python_requires='>=3.6',

    # List run-time dependencies here.  These will be installed by pip when
    # your project is installed.
    install_requires=['python-bitcoinlib>=0.12.1',
                      'appdirs>=1.3.0',
                      'PySocks>=1.5.0',
                      'pycryptodomex>=3.4.6'],

    # $ pip install -e .[test]
    extras_require={
        'test': ['pytest'],
    },

    package_data={},

    data_files=[],

    # To provide executable scripts, use entry points in preference to the
    # "scripts" keyword. Entry points provide cross-platform support and allow
    # pip to create the appropriate form of executable for the target platform.
    entry_points={
        'console_scripts': [
            'ots-anchor = anchorclient.anchor:main',
        ],
    },
)
