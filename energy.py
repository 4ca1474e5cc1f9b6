import sigpy as sp
import finiteDifferences as fd


def meanForceMagnitude(force, valid):
    """Mean length of the force vectors over the voxels that received force."""
    xp = sp.get_array_module(force)
    count = int(xp.count_nonzero(valid))
    if count == 0:
        return 0.0
    magnitude = xp.sqrt(xp.sum(xp.square(force), axis=0))
    return float(xp.sum(magnitude[valid]) / count)


def ssd(arrIn, valid):
    # Mean squared intensity difference over valid voxels
    xp = sp.get_array_module(arrIn)
    count = int(xp.count_nonzero(valid))
    if count == 0:
        return 0.0
    return float(xp.sum(xp.square(arrIn[valid])) / count)


def jacobianDet(field, device=-1):
    """
    Jacobian determinant of x -> x + u(x) for a DeformationField u (world units).
    """
    # Row ii holds the world gradient of component ii
    D = [fd.gradient(field.data[ii], field.affine, device=device) for ii in range(3)]

    # common to add identity
    for ii in range(3):
        D[ii][ii] = D[ii][ii] + 1

    J = (
        D[0][0] * D[1][1] * D[2][2]
        + D[0][1] * D[1][2] * D[2][0]
        + D[0][2] * D[1][0] * D[2][1]
        - D[0][2] * D[1][1] * D[2][0]
        - D[0][1] * D[1][0] * D[2][2]
        - D[0][0] * D[1][2] * D[2][1]
    )
    return J
