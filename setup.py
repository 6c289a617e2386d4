from setuptools import setup, find_packages
setup(
  name = 'display_health',
  packages = find_packages(exclude=['tests', 'tests.*']),
  version = '0.1',
  license='MIT',
  description = 'Health monitoring and automated recovery for networked display devices',
  author = 'Zhongmin Zhu',
  author_email = 'j@metadata.cc',
  keywords = ['display', 'health', 'watchdog', 'monitoring'],
  python_requires='>=3.9',
  install_requires=[
          'loguru>=0.6.0',
          'numpy>=1.22.0',
      ],
  extras_require={
          'test': ['pytest>=7.0'],
      },
  classifiers=[
    'Development Status :: 3 - Alpha',
    'Intended Audience :: Developers',
    'Topic :: System :: Monitoring',
    'License :: OSI Approved :: MIT License',
    'Programming Language :: Python :: 3',
    'Programming Language :: Python :: 3.9',
    'Programming Language :: Python :: 3.10',
    'Programming Language :: Python :: 3.11',
  ],
)
