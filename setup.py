from setuptools import setup

setup(
    name='pyMethDMR',
    version='0.1.0',    
    description='A Python package for detecting differentially methylated regions in bisulfite sequencing data',
    url='https://github.com/AndyCGraham/pyMethDMR',
    author='Andy Graham',
    author_email='andygraham7162@gmail.com',
    license='BSD 2-clause',
    packages=['pyMethDMR'],
    install_requires=['numpy',
                      'scipy', 
                      'pandas',
                      'ray',
                      'statsmodels',
                      'numba'
                      ],
    extras_require={'test': ['pytest']},

    classifiers=[
        'Development Status :: 1 - Planning',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: BSD License',  
        'Operating System :: POSIX :: Linux',   
        'Programming Language :: Python :: 3.11',
    ],
)
