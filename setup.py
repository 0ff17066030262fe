from setuptools import setup, find_packages

setup(
    name='talm',
    version='0.1.0',
    packages=find_packages(exclude=['talm.tests']),
    include_package_data=True,
    package_data={
        'talm.modules.presets': [
            'charts/*/*.yaml',
            'charts/*/templates/*.yaml',
            'charts/*/templates/*.tpl',
        ],
    },
    install_requires=[
        'typer[all]',
        'rich',
        'pyyaml',
        'jinja2',
        'pydantic>=2',
        'jsonschema',
        'python-dotenv',
        'cryptography',
        'pyrage',
    ],
    extras_require={
        'tests': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'talm=talm.cli:app'
        ]
    },
    description='Render and apply Talos Linux machine configs from Helm-style charts',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
