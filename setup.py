from setuptools import setup

description = 'Asynchronous message bus client'

setup(
    name='buscall',
    version='0.1.0',
    description=description,
    long_description=description,
    python_requires='>=3.9',
    packages=['buscall', 'buscall.tools'],
    install_requires=[
        'cbor2>=6,<7',
        'click>=8,<9',
        'colorama<1',
        'orjson>=3,<4',
        'pyzmq>=22',
        'structlog>=21',
        'uvloop>=0.18,<1',
        'PyYAML>=5,<7',
    ],
    extras_require={
        'test': [
            'pytest>=7',
            'pytest-asyncio>=0.21',
            'pytest-mock>=3',
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Natural Language :: English',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3.9',
    ],
    entry_points={
        'console_scripts': ['buscall = buscall.cli:cli'],
    },
    package_data={
        'buscall': ['py.typed'],
    },
)
