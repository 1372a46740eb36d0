import unittest

import torch

from qsmrecon.field_mapping import (
    GYROMAGNETIC_RATIO,
    field_to_ppm,
    fit_phase_to_echo_times,
    ppm_to_field,
)


class TestEchoFit(unittest.TestCase):

    def setUp(self):
        self.shape = (4, 5, 3)
        self.echo_times = torch.tensor([0.005, 0.010, 0.015, 0.020], dtype=torch.float64)
        self.rate = torch.linspace(-200.0, 300.0, 60, dtype=torch.float64).reshape(self.shape)
        self.phase = self.rate.unsqueeze(0) * self.echo_times.view(-1, 1, 1, 1)
        decay = torch.exp(-self.echo_times / 0.03).view(-1, 1, 1, 1)
        self.magnitude = decay * torch.ones((4,) + self.shape, dtype=torch.float64)

    def test_linear_phase_is_recovered(self):
        field, residual = fit_phase_to_echo_times(self.phase, self.magnitude, self.echo_times)
        self.assertEqual(field.shape, self.shape)
        self.assertTrue(torch.allclose(field, self.rate, rtol=1e-9, atol=1e-6))
        self.assertLess(residual.abs().max().item(), 1e-12)

    def test_echo_order_does_not_matter(self):
        order = torch.tensor([2, 0, 3, 1])
        field, _ = fit_phase_to_echo_times(self.phase[order], self.magnitude[order], self.echo_times[order])
        self.assertTrue(torch.allclose(field, self.rate, rtol=1e-9, atol=1e-6))

    def test_intercept(self):
        phase = self.phase + 0.7
        field, residual = fit_phase_to_echo_times(phase, self.magnitude, self.echo_times, fit_intercept=True)
        self.assertTrue(torch.allclose(field, self.rate, rtol=1e-6, atol=1e-4))
        self.assertLess(residual.abs().max().item(), 1e-8)

    def test_residual_grows_with_inconsistency(self):
        noisy = self.phase.clone()
        noisy[3] += 0.5
        _, residual = fit_phase_to_echo_times(noisy, self.magnitude, self.echo_times)
        self.assertTrue(torch.all(residual > 1e-3))

    def test_zero_magnitude_gives_zero_residual(self):
        magnitude = self.magnitude.clone()
        magnitude[:, 0, 0, 0] = 0
        field, residual = fit_phase_to_echo_times(self.phase, magnitude, self.echo_times)
        self.assertFalse(torch.isnan(residual).any())
        self.assertEqual(residual[0, 0, 0].item(), 0.0)
        self.assertEqual(field[0, 0, 0].item(), 0.0)

    def test_mismatched_echo_count(self):
        with self.assertRaises(ValueError):
            fit_phase_to_echo_times(self.phase, self.magnitude, self.echo_times[:3])
        with self.assertRaises(ValueError):
            fit_phase_to_echo_times(self.phase, self.magnitude[:3], self.echo_times)


class TestFieldUnits(unittest.TestCase):

    def test_one_ppm_at_three_tesla(self):
        rate = torch.tensor([GYROMAGNETIC_RATIO * 3.0 * 1e-6], dtype=torch.float64)
        self.assertAlmostEqual(field_to_ppm(rate, 3.0).item(), 1.0, places=12)
        self.assertAlmostEqual(ppm_to_field(torch.tensor([1.0], dtype=torch.float64), 3.0).item(),
                               rate.item(), places=6)

    def test_non_positive_field_strength(self):
        with self.assertRaises(ValueError):
            field_to_ppm(torch.ones(1), 0.0)


if __name__ == '__main__':
    unittest.main()
