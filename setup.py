import os
from setuptools import setup, find_packages


on_rtd = os.environ.get('READTHEDOCS') == 'True'
if on_rtd:
    install_requires = []
else:
    install_requires = [
        'torch',
        'numpy',
        'h5py',
        'colorlog',
        'tqdm',
    ]

setup(
    name='patchinfer',
    version='0.1.0',
    description='Patched inference of size-limited PyTorch models on large volumes',
    author='ELEKTRONN team',
    license='MIT',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
    ],
    packages=find_packages(exclude=['scripts', 'tests', 'tests.*', 'examples']),
    python_requires='>=3.8',
    install_requires=install_requires,
    extras_require={
        'tests': ['pytest'],
    },
)
