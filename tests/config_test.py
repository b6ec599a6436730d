import os
import tempfile
import unittest

from config import Config, create_folder_name, init_training_results
from helpers import make_config


class FolderNameTest(unittest.TestCase):
    def test_existing_folders_get_a_suffix(self):
        with tempfile.TemporaryDirectory() as results_dir:
            self.assertEqual(create_folder_name("run", results_dir), "run")

            os.makedirs(os.path.join(results_dir, "run"))
            self.assertEqual(create_folder_name("run", results_dir), "run_1")

            os.makedirs(os.path.join(results_dir, "run_1"))
            self.assertEqual(create_folder_name("run", results_dir), "run_2")


class ConfigTest(unittest.TestCase):
    def test_defaults(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = Config(run_folder="run", results_dir=results_dir)

            self.assertEqual(config.run_path, os.path.join(results_dir, "run"))
            self.assertEqual(config.output_path, os.path.join(results_dir, "run", "output"))
            self.assertEqual(config.beta1, 0.5)
            self.assertEqual(config.vae_backend, 'torch')

    def test_init_training_results(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = make_config(results_dir, debug_mode=True)
            init_training_results(config, ["epoch", "loss"])

            for folder in ("output", "reconstructions", "checkpoints", "debug"):
                self.assertTrue(os.path.isdir(os.path.join(config.run_path, folder)))

            with open(os.path.join(config.run_path, "training_results.csv")) as rf:
                self.assertEqual(rf.read(), "epoch,loss\n")

            with open(os.path.join(config.run_path, "flags.txt")) as rf:
                flags = rf.read()

            self.assertIn("dataset = fake", flags)
            self.assertIn("batch_size = 8", flags)
            self.assertTrue(os.path.exists(os.path.join(config.run_path, "run.log")))

    def test_runs_never_overwrite_each_other(self):
        with tempfile.TemporaryDirectory() as results_dir:
            first = make_config(results_dir)
            init_training_results(first, ["epoch"])

            second = make_config(results_dir)
            init_training_results(second, ["epoch"])

            self.assertNotEqual(first.run_path, second.run_path)


if __name__ == '__main__':
    unittest.main()
