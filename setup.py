from setuptools import setup, find_packages

setup(
    name='rollctl',
    version='0.1.0',
    packages=find_packages(exclude=['rollctl.tests']),
    include_package_data=True,
    install_requires=[
        'typer>=0.9',
        'rich',
        'kubernetes',
        'python-dotenv',
        'requests',
        'PyYAML',
        'pydantic>=2',
    ],
    extras_require={
        'test': [
            'pytest',
            'jsonschema',
        ],
    },
    entry_points={
        'console_scripts': [
            'rollctl=rollctl.cli:app'
        ]
    },
    description='Rolling OS upgrade orchestrator for Talos Linux clusters',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
