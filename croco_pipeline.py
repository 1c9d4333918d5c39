# croco_pipeline.py
# Dependency chain + CROCO build for an Intel 18 / Intel MPI cluster.
# Order matters: each library links against the ones above it.
from __future__ import annotations

import os
import re

from hpcbuild.dsl import configure_make_install, patch, sh, stage
from hpcbuild.dsl import pipeline as make_pipeline

INTEL_MODULES = os.environ.get(
    "CROCO_MODULES", "chpc/parallel_studio_xe/18.0.2/2018.2.046"
).split()
MPI_VARS = os.environ.get(
    "CROCO_MPIVARS",
    "/apps/compilers/intel/parallel_studio_xe_2018_update2/compilers_and_libraries/linux/mpi/bin64/mpivars.sh",
)

# link line CROCO needs against the freshly installed stack
CROCO_LIBS = "-L${PREFIX}/lib -lnetcdff -lnetcdf -lhdf5_hl -lhdf5 -lz"


def pipeline():
    zlib = stage(
        "zlib",
        steps_list=configure_make_install(),
        fetch="https://zlib.net/fossils/zlib-1.3.1.tar.gz",
        artifact="zlib-1.3.1",
        marker="lib/libz.a",
        exports={"ZLIB_ROOT": "${PREFIX}"},
        requires=["make"],
    )

    curl = stage(
        "curl",
        steps_list=configure_make_install(
            "--with-zlib=${ZLIB_ROOT} --with-ssl=/usr --enable-ipv6 --enable-unix-sockets"
        ),
        fetch="https://curl.se/download/curl-7.88.1.tar.gz",
        artifact="curl-7.88.1",
        marker="bin/curl",
        patches=[
            # icc 18.0.2 rejects the C11 lock initialiser in easy.c
            patch(
                "easy.c atomic lock (Intel 18.0.2)",
                "lib/easy.c",
                pattern=re.escape("static curl_simple_lock s_lock = CURL_SIMPLE_LOCK_INIT;"),
                replacement="static atomic_int s_lock = ATOMIC_VAR_INIT(0);",
                when={"COMPILER_VERSION": "18.0.2*"},
            ),
        ],
        requires=["make"],
    )

    hdf5 = stage(
        "hdf5",
        steps_list=configure_make_install(
            "--enable-parallel --enable-shared --enable-fortran "
            'CC="${MPICC}" FC="${MPIF90}" CFLAGS="${CFLAGS}" FCFLAGS="${FCFLAGS}"'
        ),
        fetch="https://support.hdfgroup.org/ftp/HDF5/releases/hdf5-1.14/hdf5-1.14.0/src/hdf5-1.14.0.tar.gz",
        artifact="hdf5-1.14.0",
        marker="include/hdf5.h",
        exports={"HDF5_DIR": "${PREFIX}"},
        requires=["make", "${MPICC}", "${MPIF90}"],
    )

    netcdf_c = stage(
        "netcdf-c",
        steps_list=configure_make_install(
            "--enable-parallel-tests --enable-shared --with-hdf5=${HDF5_DIR} "
            'CC="${MPICC}" CPPFLAGS="-I${PREFIX}/include" LDFLAGS="-L${PREFIX}/lib" CFLAGS="${CFLAGS}"'
        ),
        fetch="https://downloads.unidata.ucar.edu/netcdf-c/4.9.2/netcdf-c-4.9.2.tar.gz",
        artifact="netcdf-c-4.9.2",
        marker="bin/nc-config",
        exports={"NETCDF": "${PREFIX}"},
        requires=["make", "${MPICC}"],
    )

    netcdf_fortran = stage(
        "netcdf-fortran",
        steps_list=configure_make_install(
            "--enable-shared "
            'CC="${MPICC}" FC="${MPIF90}" CPPFLAGS="-I${PREFIX}/include" LDFLAGS="-L${PREFIX}/lib" '
            'CFLAGS="${CFLAGS}" FCFLAGS="${FCFLAGS}"'
        ),
        fetch="https://downloads.unidata.ucar.edu/netcdf-fortran/4.6.1/netcdf-fortran-4.6.1.tar.gz",
        artifact="netcdf-fortran-4.6.1",
        marker="bin/nf-config",
        exports={"NETCDF_FORTRAN": "${PREFIX}"},
        requires=["make", "${MPIF90}"],
    )

    croco = stage(
        "croco",
        sh("jobcomp", "./jobcomp"),
        sh("install", "mkdir -p ${PREFIX}/bin && cp croco ${PREFIX}/bin/"),
        workdir="CROCO/OCEAN",
        requires_paths=["CROCO/OCEAN/jobcomp"],
        clean=["*.o", "*.f90", "*.mod", "*.a", "croco"],
        patches=[
            patch("jobcomp FC", "jobcomp", r"^FC=.*$", "FC=${FC}"),
            patch("jobcomp CC", "jobcomp", r"^CC=.*$", "CC=${MPICC}"),
            patch("jobcomp FFLAGS", "jobcomp", r"^FFLAGS=.*$", 'FFLAGS="${FCFLAGS} -I${PREFIX}/include"'),
            patch("jobcomp LDFLAGS", "jobcomp", r"^LDFLAGS=.*$", f'LDFLAGS="{CROCO_LIBS}"'),
        ],
        marker="bin/croco",
    )

    return make_pipeline(
        "croco",
        zlib, curl, hdf5, netcdf_c, netcdf_fortran, croco,
        modules=INTEL_MODULES,
        env_scripts=[MPI_VARS] if MPI_VARS else [],
        env={
            "COMPILER_VERSION": "${COMPILER_VERSION:-18.0.2}",
            "CC": "${CC:-icc}",
            "CXX": "${CXX:-icpc}",
            "FC": "${FC:-ifort}",
            "MPICC": "${MPICC:-mpiicc}",
            "MPICXX": "${MPICXX:-mpiicpc}",
            "MPIF90": "${MPIF90:-mpiifort}",
            "CFLAGS": "${CFLAGS:--O3 -xHost}",
            "FCFLAGS": "${FCFLAGS:--O3 -xHost}",
        },
        prepend={
            "PATH": ["${PREFIX}/bin"],
            "LD_LIBRARY_PATH": ["${PREFIX}/lib", "${PREFIX}/lib64"],
            "PKG_CONFIG_PATH": ["${PREFIX}/lib/pkgconfig"],
        },
        vendor_checks={"CC": "intel", "FC": "intel", "MPICC": "intel"},
        artifact="bin/croco",
    )
