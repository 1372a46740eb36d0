import unittest

import numpy as np
import pytest
import torch

from qsmrecon import (
    AcquisitionData,
    BackendError,
    ConfigurationError,
    EmptyMaskError,
    QSMOptions,
    QSMPipeline,
)
from qsmrecon.background_removal import BackgroundRemover, BackgroundResult, get_background_remover
from qsmrecon.dipole_inversion import DipoleInverter
from qsmrecon.field_mapping import GYROMAGNETIC_RATIO
from qsmrecon.kernels import convolve_kspace, dipole_kernel
from qsmrecon.phase_unwrapping import RegionGrowingUnwrapper
from qsmrecon.utils import wrap_phase

SHAPE = (16, 16, 16)
VOXEL_SIZE = (1.0, 1.0, 2.0)
ECHO_TIMES = [0.005, 0.010, 0.015, 0.020]
FIELD_STRENGTH = 3.0


@pytest.fixture(scope='module')
def synthetic_acquisition():
    """Four-echo acquisition of a uniform susceptibility block with no background field."""
    chi = torch.zeros(SHAPE, dtype=torch.float64)
    chi[6:10, 6:10, 7:9] = 0.1
    field_ppm = convolve_kspace(chi, dipole_kernel(SHAPE, VOXEL_SIZE))
    rate = field_ppm * 1e-6 * GYROMAGNETIC_RATIO * FIELD_STRENGTH
    te = torch.tensor(ECHO_TIMES, dtype=torch.float64).view(-1, 1, 1, 1)
    phase = wrap_phase(rate.unsqueeze(0) * te)
    magnitude = torch.exp(-te / 0.04) * torch.ones((4,) + SHAPE, dtype=torch.float64)
    mask = torch.zeros(SHAPE, dtype=torch.bool)
    mask[3:13, 3:13, 3:13] = True
    acquisition = AcquisitionData(magnitude, phase, ECHO_TIMES, VOXEL_SIZE, field_strength=FIELD_STRENGTH)
    return acquisition, mask, field_ppm


class _JumpyUnwrapper(RegionGrowingUnwrapper):
    """Region growing that leaves a whole 2*pi offset on the third echo."""

    def unwrap(self, wrapped_phase, mask, voxel_size, magnitude=None, echo=None):
        result = super().unwrap(wrapped_phase, mask, voxel_size, magnitude=magnitude, echo=echo)
        if echo == 3:
            offset = 2 * np.pi * (mask != 0).to(result.unwrapped_phase.dtype)
            return result._replace(unwrapped_phase=result.unwrapped_phase + offset)
        return result


class _IdentityInverter(DipoleInverter):
    name = 'identity'

    def invert(self, local_field, mask, voxel_size, magnitude=None, orientation=(0.0, 0.0, 1.0)):
        return local_field.clone()


class _BrokenRemover(BackgroundRemover):
    name = 'broken'

    def remove_background(self, field_ppm, mask, voxel_size, magnitude=None, orientation=(0.0, 0.0, 1.0)):
        raise RuntimeError("solver diverged")


class _MutatingRemover(BackgroundRemover):
    name = 'mutating'

    def remove_background(self, field_ppm, mask, voxel_size, magnitude=None, orientation=(0.0, 0.0, 1.0)):
        field_ppm.zero_()
        mask.zero_()
        return BackgroundResult(field_ppm, mask)


def test_end_to_end_field_map(synthetic_acquisition):
    acquisition, mask, expected_field = synthetic_acquisition
    options = QSMOptions(ph_unwrap='prelude', bkg_rm=('sharp', 'resharp'), inv_num=20, cgs_num=20)
    result = QSMPipeline(options, unwrapper=_JumpyUnwrapper()).run(acquisition, mask)

    assert result.njumps == {3: 1, 4: 0}
    assert result.reliability is None
    inside = mask
    assert torch.allclose(result.field_ppm[inside], expected_field[inside], atol=1e-6)
    assert torch.all(result.field_ppm[~inside] == 0)
    assert torch.all(result.reliability_mask == 1)

    assert set(result.backends) == {'sharp', 'resharp'}
    assert result.failures == {}
    for name, output in result.backends.items():
        assert output.local_field.shape == SHAPE
        assert output.mask.sum() > 0
        assert torch.all(output.mask <= inside.to(output.mask.dtype))
        assert torch.all(output.susceptibility[output.mask == 0] == 0)


def test_end_to_end_local_field_matches_dipole_field():
    """With no background field, RESHARP's local field is the dipole field of the source."""
    shape = (32, 32, 32)
    chi = torch.zeros(shape, dtype=torch.float64)
    chi[14:18, 14:18, 15:17] = 0.1
    field_ppm = convolve_kspace(chi, dipole_kernel(shape, VOXEL_SIZE))
    rate = field_ppm * 1e-6 * GYROMAGNETIC_RATIO * FIELD_STRENGTH
    te = torch.tensor(ECHO_TIMES, dtype=torch.float64).view(-1, 1, 1, 1)
    phase = wrap_phase(rate.unsqueeze(0) * te)
    magnitude = torch.ones((4,) + shape, dtype=torch.float64)
    mask = torch.zeros(shape, dtype=torch.bool)
    mask[11:21, 11:21, 11:21] = True
    acquisition = AcquisitionData(magnitude, phase, ECHO_TIMES, VOXEL_SIZE, field_strength=FIELD_STRENGTH)

    options = QSMOptions(ph_unwrap='prelude', bkg_rm='resharp')
    result = QSMPipeline(options, inverter=_IdentityInverter()).run(acquisition, mask)

    assert result.failures == {}
    output = result.backends['resharp']
    inside = output.mask != 0
    assert inside.sum() > 0
    error = torch.abs(output.local_field - field_ppm)[inside]
    assert error.max().item() < 0.01


def test_empty_mask_is_fatal(synthetic_acquisition):
    acquisition, _, _ = synthetic_acquisition
    pipeline = QSMPipeline(QSMOptions(ph_unwrap='prelude', bkg_rm='sharp'), inverter=_IdentityInverter())
    with pytest.raises(EmptyMaskError):
        pipeline.run(acquisition, torch.zeros(SHAPE, dtype=torch.bool))


class TestPipelineConfiguration(unittest.TestCase):

    def test_invalid_options_fail_before_any_volume(self):
        with self.assertRaises(ConfigurationError):
            QSMPipeline({'ph_unwrap': 'goldstein'})
        with self.assertRaises(ConfigurationError):
            QSMPipeline({'bkg_rm': []})
        with self.assertRaises(ConfigurationError):
            QSMPipeline({'bkg_rm': ['resharp', 'magic']})

    def test_defaults_build_path_based_unwrapper(self):
        pipeline = QSMPipeline({'unwrap_timeout': 30})
        self.assertEqual(pipeline.unwrapper.name, 'bestpath')
        self.assertEqual(pipeline.unwrapper.timeout, 30)
        self.assertEqual(pipeline.unwrapper.command, ('3DSRNCP',))
        self.assertEqual(set(pipeline.removers), {'resharp'})

    def test_invalid_unwrapper_type(self):
        with self.assertRaises(ConfigurationError):
            QSMPipeline(unwrapper=object())


class TestBackendIsolation(unittest.TestCase):

    def setUp(self):
        shape = (12, 12, 12)
        te = torch.tensor([0.004, 0.008, 0.012], dtype=torch.float64).view(-1, 1, 1, 1)
        x = torch.arange(shape[0], dtype=torch.float64).view(-1, 1, 1)
        rate = (20.0 * x).expand(*shape)
        phase = wrap_phase(rate.unsqueeze(0) * te)
        magnitude = torch.ones((3,) + shape, dtype=torch.float64)
        self.acquisition = AcquisitionData(magnitude, phase, te.flatten().tolist(), (1.0, 1.0, 1.0))
        self.mask = torch.zeros(shape)
        self.mask[2:10, 2:10, 2:10] = 1

    def _factory(self, name, options):
        if name == 'pdf':
            return _BrokenRemover()
        if name == 'lbv':
            return _MutatingRemover()
        return get_background_remover(name, options)

    def test_failing_backend_does_not_stop_others(self):
        options = QSMOptions(ph_unwrap='prelude', bkg_rm=('pdf', 'sharp'))
        pipeline = QSMPipeline(options, remover_factory=self._factory, inverter=_IdentityInverter())
        result = pipeline.run(self.acquisition, self.mask)
        self.assertIn('sharp', result.backends)
        self.assertNotIn('pdf', result.backends)
        error = result.failures['pdf']
        self.assertIsInstance(error, BackendError)
        self.assertEqual(error.backend, 'pdf')
        self.assertIn('solver diverged', str(error))

    def test_backends_receive_independent_inputs(self):
        options = QSMOptions(ph_unwrap='prelude', bkg_rm=('lbv', 'sharp'), backend_workers=1)
        reference = QSMPipeline(
            QSMOptions(ph_unwrap='prelude', bkg_rm='sharp'), inverter=_IdentityInverter()
        ).run(self.acquisition, self.mask)
        pipeline = QSMPipeline(options, remover_factory=self._factory, inverter=_IdentityInverter())
        result = pipeline.run(self.acquisition, self.mask)
        self.assertTrue(torch.all(result.backends['lbv'].local_field == 0))
        self.assertGreater(torch.abs(result.field_ppm).sum().item(), 0)
        self.assertTrue(torch.equal(result.backends['sharp'].local_field, reference.backends['sharp'].local_field))

    def test_concurrent_backends(self):
        options = QSMOptions(ph_unwrap='prelude', bkg_rm=('sharp', 'resharp', 'pdf'), backend_workers=3)
        pipeline = QSMPipeline(options, remover_factory=self._factory, inverter=_IdentityInverter())
        result = pipeline.run(self.acquisition, self.mask)
        self.assertEqual(set(result.backends), {'sharp', 'resharp'})
        self.assertEqual(set(result.failures), {'pdf'})


class TestAcquisitionData(unittest.TestCase):

    def test_from_xyz_echo_moves_echoes_first(self):
        magnitude = np.random.rand(4, 5, 6, 3)
        phase = np.random.rand(4, 5, 6, 3)
        acquisition = AcquisitionData.from_xyz_echo(magnitude, phase, [0.01, 0.02, 0.03], (1, 1, 2))
        self.assertEqual(tuple(acquisition.phase.shape), (3, 4, 5, 6))
        self.assertEqual(acquisition.spatial_shape, (4, 5, 6))
        self.assertEqual(acquisition.num_echoes, 3)
        np.testing.assert_allclose(acquisition.phase[1].numpy(), phase[..., 1])

    def test_echo_time_count_must_match(self):
        with self.assertRaises(ValueError):
            AcquisitionData(torch.zeros(3, 4, 4, 4), torch.zeros(3, 4, 4, 4), [0.01, 0.02], (1, 1, 1))

    def test_shape_mismatch(self):
        with self.assertRaises(ValueError):
            AcquisitionData(torch.zeros(3, 4, 4, 4), torch.zeros(3, 4, 4, 5), [0.01, 0.02, 0.03], (1, 1, 1))


if __name__ == '__main__':
    unittest.main()
