import unittest

import torch

from qsmrecon.kernels import (
    conjugate_gradient,
    dipole_kernel,
    erode_mask,
    smv_erode,
    smv_kernel,
)


class TestDipoleKernel(unittest.TestCase):

    def test_values_along_axes(self):
        D = dipole_kernel((8, 8, 8), (1.0, 1.0, 1.0))
        self.assertEqual(D.shape, (8, 8, 8))
        self.assertEqual(D[0, 0, 0].item(), 0.0)
        self.assertAlmostEqual(D[0, 0, 1].item(), 1.0 / 3.0 - 1.0)
        self.assertAlmostEqual(D[1, 0, 0].item(), 1.0 / 3.0)
        self.assertAlmostEqual(D[0, 2, 0].item(), 1.0 / 3.0)

    def test_orientation_is_normalised(self):
        D1 = dipole_kernel((6, 6, 6), (1.0, 1.0, 2.0), orientation=(0.0, 0.0, 1.0))
        D2 = dipole_kernel((6, 6, 6), (1.0, 1.0, 2.0), orientation=(0.0, 0.0, 5.0))
        self.assertTrue(torch.allclose(D1, D2))

    def test_tilted_field(self):
        D = dipole_kernel((8, 8, 8), (1.0, 1.0, 1.0), orientation=(1.0, 0.0, 0.0))
        self.assertAlmostEqual(D[1, 0, 0].item(), 1.0 / 3.0 - 1.0)
        self.assertAlmostEqual(D[0, 0, 1].item(), 1.0 / 3.0)

    def test_zero_orientation_rejected(self):
        with self.assertRaises(ValueError):
            dipole_kernel((4, 4, 4), (1.0, 1.0, 1.0), orientation=(0.0, 0.0, 0.0))


class TestSMVKernel(unittest.TestCase):

    def test_unit_dc_and_count(self):
        S, count = smv_kernel((8, 8, 8), (1.0, 1.0, 1.0), radius=1.0)
        self.assertEqual(count, 7)
        self.assertAlmostEqual(S[0, 0, 0].item(), 1.0)

    def test_anisotropic_voxels(self):
        # 2 mm slices: a 1.5 mm sphere spans one voxel in x and y and none in z.
        _, count = smv_kernel((8, 8, 8), (1.0, 1.0, 2.0), radius=1.5)
        self.assertEqual(count, 9)

    def test_smv_erosion(self):
        S, count = smv_kernel((16, 16, 16), (1.0, 1.0, 1.0), radius=2.0)
        mask = torch.zeros((16, 16, 16), dtype=torch.float64)
        mask[3:13, 3:13, 3:13] = 1
        eroded = smv_erode(mask, S, count)
        self.assertTrue(torch.all(eroded <= mask))
        self.assertEqual(eroded[5:11, 5:11, 5:11].sum().item(), 216)
        self.assertEqual(eroded.sum().item(), 216)


class TestErodeMask(unittest.TestCase):

    def test_layers(self):
        mask = torch.zeros((9, 9, 9))
        mask[2:7, 2:7, 2:7] = 1
        self.assertEqual(erode_mask(mask, 1).sum().item(), 27)
        self.assertEqual(erode_mask(mask, 2).sum().item(), 1)
        self.assertTrue(torch.equal(erode_mask(mask, 0), mask))

    def test_volume_border_counts_as_outside(self):
        mask = torch.ones((5, 5, 5))
        self.assertEqual(erode_mask(mask, 1).sum().item(), 27)


class TestConjugateGradient(unittest.TestCase):

    def test_diagonal_system(self):
        d = torch.linspace(1.0, 10.0, 50, dtype=torch.float64)
        b = torch.linspace(-3.0, 2.0, 50, dtype=torch.float64)
        x = conjugate_gradient(lambda v: d * v, b, max_iter=100, tol=1e-12)
        self.assertTrue(torch.allclose(x, b / d, atol=1e-10))

    def test_zero_rhs(self):
        x = conjugate_gradient(lambda v: 2 * v, torch.zeros(5, dtype=torch.float64))
        self.assertTrue(torch.equal(x, torch.zeros(5, dtype=torch.float64)))


if __name__ == '__main__':
    unittest.main()
