from setuptools import setup, find_packages
import re

def get_property(prop, project):
    result = re.search(r'{}\s*=\s*[\'"]([^\'"]*)[\'"]'.format(prop),
                       open(project + '/__init__.py').read())
    return result.group(1)

reqs = [
    'keckdrpframework',
    'astropy',
    'numpy',
    'pandas',
    'python-dotenv',
    'watchdog',
]

setup(
    name="obspipe",
    version=get_property('__version__', 'obspipe'),
    description="Recipe driven reduction pipeline for instrument observations",
    packages=find_packages(exclude=['tests', 'tests.*']),
    package_data={'obspipe': ['configs/*.cfg',
                              'instruments/*/instrument.cfg',
                              'instruments/*/recipes/*',
                              'instruments/*/primitives/*',
                              'instruments/*/calib/*']},
    include_package_data=True,
    entry_points={'console_scripts': ['obspipe=obspipe.cli:main']},
    install_requires=reqs,
    extras_require={'test': ['pytest']},
    python_requires='>=3.9',
)
