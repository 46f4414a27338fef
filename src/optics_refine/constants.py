"""Shared constants for beam tilt and odd aberration estimation."""

# Optics table columns
OPTICS_GROUP = "rlnOpticsGroup"
PIXEL_SIZE = "rlnImagePixelSize"
VOLTAGE = "rlnVoltage"
SPHERICAL_ABERRATION = "rlnSphericalAberration"
AMPLITUDE_CONTRAST = "rlnAmplitudeContrast"
BEAM_TILT_X = "rlnBeamTiltX"
BEAM_TILT_Y = "rlnBeamTiltY"
ODD_ZERNIKE = "rlnOddZernike"
EVEN_ZERNIKE = "rlnEvenZernike"
MAG_MATRIX_COLUMNS = (
    ("rlnMagMat00", "rlnMagMat01"),
    ("rlnMagMat10", "rlnMagMat11"),
)

# Particle table columns
MICROGRAPH_NAME = "rlnMicrographName"
DEFOCUS_U = "rlnDefocusU"
DEFOCUS_V = "rlnDefocusV"
DEFOCUS_ANGLE = "rlnDefocusAngle"
PHASE_SHIFT = "rlnPhaseShift"
CTF_BFACTOR = "rlnCtfBfactor"
CTF_SCALEFACTOR = "rlnCtfScalefactor"
ORIGIN_X_ANGST = "rlnOriginXAngst"
ORIGIN_Y_ANGST = "rlnOriginYAngst"

REQUIRED_OPTICS_COLUMNS = (OPTICS_GROUP, PIXEL_SIZE, VOLTAGE, SPHERICAL_ABERRATION)
REQUIRED_PARTICLE_COLUMNS = (OPTICS_GROUP, DEFOCUS_U, DEFOCUS_V, DEFOCUS_ANGLE)

# Physics
CS_MM_TO_ANGSTROM = 1e7  # Spherical aberration is tabulated in mm
MRAD = 1e-3  # Beam tilt is tabulated in mrad
DEFAULT_AMPLITUDE_CONTRAST = 0.1

# Correction image kinds
PHASE = "phase"
GAMMA_OFFSET = "gamma_offset"
CORRECTION_KINDS = (PHASE, GAMMA_OFFSET)

# Checkpoint file name parts
XY_ACC_TAG = "_xyAcc_optics-group_"
W_ACC_TAG = "_wAcc_optics-group_"
STAGING_SUFFIX = ".part"
BATCH_ID_EXTENSIONS = (".mrc", ".mrcs", ".tif", ".tiff", ".eer", ".star")  # Dropped from batch ids

# Fitting
POLYNOMIAL_MIN_DEGREE = 3  # Degrees below this use the planar model
SINGULAR_VALUE_RTOL = 1e-12  # Relative singular value cutoff for rank detection
