import abc
from collections import namedtuple
from enum import Enum

import sigpy as sp

import energy
from imwarp import imwarp

# Thresholds for numerical stability
DenominatorThreshold = 1e-9

ForceResult = namedtuple("ForceResult", "force valid metric ssd")


class DemonsMode(Enum):
    Additive = "Additive"
    Compositive = "Compositive"


def demonsMode(value):
    if isinstance(value, DemonsMode):
        return value
    for mode in DemonsMode:
        if mode.value.lower() == str(value).strip().lower():
            return mode
    raise ValueError("Unknown demons mode: {}".format(value))


def demonsForce(T, S, dT, inside, targetPadding, sourcePadding, dS=None):
    """
    Thirion demons force f = (T - S) * grad / (|grad|^2 + (T - S)^2).

    Inputs
    T - Target intensities (nx, ny, nz, nt)
    S - Warped source intensities, same shape as T
    dT - Target gradient in world units (3, nx, ny, nz, nt)
    inside - Voxels whose warped position lies in the fast source domain (nx, ny, nz)
    dS - Warped source gradient. If given the average of both gradients is used.

    Background voxels, samples outside the domain and near-zero denominators get zero force.
    Frames are averaged, the returned force has shape (3, nx, ny, nz).
    """
    xp = sp.get_array_module(T)
    grad = dT if dS is None else 0.5 * (dT + dS)
    Idiff = T - S
    Denominator = xp.sum(grad ** 2, axis=0) + Idiff ** 2
    valid = (
        (T > targetPadding)
        & (S > sourcePadding)
        & inside[..., None]
        & (Denominator >= DenominatorThreshold)
    )
    cfactor = xp.where(valid, Idiff / xp.where(valid, Denominator, 1.0), 0.0)
    V = cfactor * grad
    # Generate mask for null values (convert to zeros)
    V[~xp.isfinite(V)] = 0.0
    force = xp.mean(V, axis=-1)
    voxelValid = xp.any(valid, axis=-1)
    return ForceResult(
        force, voxelValid, energy.meanForceMagnitude(force, voxelValid), energy.ssd(Idiff, valid)
    )


class DemonsStepStrategy(abc.ABC):
    """
    One demons iteration split in Force, Add, Smooth and Update.
    Both variants share the force and differ in how the increment is folded
    into the global field.
    """

    mode = None

    def __init__(self, symmetric=False):
        self.symmetric = symmetric

    def force(self, state, globalField):
        """Force at every target voxel given the current global field."""
        source = state.source
        coords = source.worldToVoxel(state.targetGrid + globalField.data)
        inside = state.domain.contains(coords)
        S = imwarp(
            source.data, coords, state.interpolationMode, cval=state.sourcePadding, device=source.device
        )
        S[~inside] = state.sourcePadding
        dS = None
        if self.symmetric:
            xp = sp.get_array_module(S)
            dS = xp.stack(
                [
                    imwarp(g, coords, state.interpolationMode, device=source.device)
                    for g in state.sourceGradient
                ]
            )
        return demonsForce(
            state.target.data,
            S,
            state.targetGradient,
            inside,
            state.targetPadding,
            state.sourcePadding,
            dS=dS,
        )

    def add(self, local, force, stepSize):
        local.data += stepSize * force
        return local

    def smooth(self, local, sigma):
        return local.smooth(sigma)

    @abc.abstractmethod
    def update(self, globalField, local):
        """Returns the new global field."""


class AdditiveDemons(DemonsStepStrategy):
    mode = DemonsMode.Additive

    def update(self, globalField, local):
        return globalField.add(local)


class CompositiveDemons(DemonsStepStrategy):
    mode = DemonsMode.Compositive

    def update(self, globalField, local):
        # global(x) + local(x + global(x))
        return globalField.compose(local)


def createStrategy(mode, symmetric=False):
    mode = demonsMode(mode)
    if mode is DemonsMode.Additive:
        return AdditiveDemons(symmetric=symmetric)
    elif mode is DemonsMode.Compositive:
        return CompositiveDemons(symmetric=symmetric)
    raise ValueError("Unknown demons mode: {}".format(mode))
