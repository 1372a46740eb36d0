import unittest

from qsmrecon.config import QSMOptions
from qsmrecon.exceptions import ConfigurationError, QSMError


class TestQSMOptions(unittest.TestCase):

    def test_defaults(self):
        options = QSMOptions()
        self.assertEqual(options.readout, 'unipolar')
        self.assertTrue(options.r_mask)
        self.assertEqual(options.fit_thr, 20.0)
        self.assertEqual(options.ph_unwrap, 'bestpath')
        self.assertEqual(options.bkg_rm, ('resharp',))
        self.assertEqual(options.smv_rad, 3.0)
        self.assertEqual(options.tik_reg, 1e-4)
        self.assertEqual(options.cgs_num, 200)
        self.assertEqual(options.lbv_peel, 2)
        self.assertEqual(options.tv_reg, 5e-4)
        self.assertEqual(options.inv_num, 500)
        self.assertEqual(options.esharp_radius, (10, 10, 5))

    def test_names_are_normalised(self):
        options = QSMOptions(readout='Bipolar', ph_unwrap='guided_region', bkg_rm='LBV')
        self.assertEqual(options.readout, 'bipolar')
        self.assertEqual(options.ph_unwrap, 'prelude')
        self.assertEqual(options.bkg_rm, ('lbv',))
        self.assertEqual(QSMOptions(ph_unwrap='path_based').ph_unwrap, 'bestpath')

    def test_duplicate_backends_collapse(self):
        options = QSMOptions(bkg_rm=['sharp', 'SHARP', 'pdf'])
        self.assertEqual(options.bkg_rm, ('sharp', 'pdf'))

    def test_unknown_unwrap_method(self):
        with self.assertRaises(ConfigurationError) as ctx:
            QSMOptions(ph_unwrap='laplacian')
        self.assertEqual(ctx.exception.stage, 'configuration')
        self.assertIn('laplacian', str(ctx.exception))

    def test_empty_backend_set(self):
        with self.assertRaises(ConfigurationError):
            QSMOptions(bkg_rm=())

    def test_unknown_backend(self):
        with self.assertRaises(ConfigurationError):
            QSMOptions(bkg_rm=('resharp', 'vsharp'))

    def test_unknown_readout(self):
        with self.assertRaises(ConfigurationError):
            QSMOptions(readout='epi')

    def test_non_positive_values(self):
        for bad in ({'fit_thr': 0}, {'smv_rad': -1}, {'cgs_num': 0}, {'tik_reg': -1e-3},
                    {'lbv_peel': -1}, {'bet_thr': 1.5}, {'esharp_radius': (10, 10)},
                    {'unwrap_workers': 0}):
            with self.assertRaises(ConfigurationError):
                QSMOptions(**bad)

    def test_non_numeric_values(self):
        for bad in ({'fit_thr': 'high'}, {'cgs_num': 'many'}, {'tv_reg': None}, {'bet_thr': 'x'},
                    {'lbv_peel': 'two'}, {'unwrap_timeout': 'soon'}, {'esharp_radius': ('a', 1, 1)}):
            with self.assertRaises(ConfigurationError) as ctx:
                QSMOptions(**bad)
            self.assertEqual(ctx.exception.stage, 'configuration')
            self.assertIn(next(iter(bad)), str(ctx.exception))

    def test_unknown_key_in_mapping(self):
        with self.assertRaises(ConfigurationError):
            QSMOptions.from_dict({'readout': 'unipolar', 'interp': 1})

    def test_dict_round_trip(self):
        options = QSMOptions(bkg_rm=('pdf', 'lbv'), tv_reg=1e-3)
        again = QSMOptions.from_dict(options.to_dict())
        self.assertEqual(again.to_dict(), options.to_dict())
        self.assertEqual(QSMOptions.from_dict(None).to_dict(), QSMOptions().to_dict())

    def test_configuration_error_is_a_qsm_error(self):
        self.assertTrue(issubclass(ConfigurationError, QSMError))
        self.assertTrue(issubclass(ConfigurationError, ValueError))


if __name__ == '__main__':
    unittest.main()
