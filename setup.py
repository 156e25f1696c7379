"""
Packaging for mcpbox.

Tests live beside the code as *_test.py modules; integration tests that launch real worker
processes are under integrate/. Run both with `pip install -e .[test]` followed by `pytest`.
"""

from setuptools import setup


setup(
    name='mcpbox-connector-py',
    version='0.1.0',
    description='Supervised connections to MCP servers running as local worker processes.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['mcpbox', 'mcpbox.conduit', 'mcpbox.config', 'mcpbox.connector',
              'mcpbox.protocol', 'mcpbox.support'],
    python_requires='>=3.8',
    install_requires=[
        'configobj',
    ],
    extras_require={
        'test': [
            'PyHamcrest>=2.0',
            'timeout-decorator',
            'pytest>=7',
        ],
    },
    zip_safe=False,
)
