import unittest
import torch

from dataset import (check_loader, make_dataset, make_transform, split_dataset, make_train_loader,
                     make_train_and_valid_loaders, sample_dataset, make_xor_dataset, make_tensor_loader)


class MakeDatasetTest(unittest.TestCase):
    def test_fake_images(self):
        data = make_dataset('fake', image_size=28, channels=1, fake_size=16)
        image, _ = data[0]

        self.assertEqual(len(data), 16)
        self.assertEqual(image.shape, (1, 28, 28))

    def test_normalisation(self):
        normalized, _ = make_dataset('fake', normalize=True, fake_size=4)[0]
        unit, _ = make_dataset('fake', normalize=False, fake_size=4)[0]

        self.assertGreaterEqual(unit.min().item(), 0.0)
        self.assertTrue(torch.allclose(normalized, unit * 2 - 1, atol=1e-6))
        self.assertLess(normalized.min().item(), 0.0)

    def test_resize(self):
        image, _ = make_dataset('fake', image_size=32, channels=3, fake_size=4)[0]

        self.assertEqual(image.shape, (3, 32, 32))

    def test_unknown_dataset(self):
        with self.assertRaises(ValueError):
            make_dataset('cifar100')

    def test_transform_without_normalisation(self):
        self.assertEqual(len(make_transform(28, normalize=False).transforms), 2)


class SplitDatasetTest(unittest.TestCase):
    def test_split_sizes(self):
        data = make_dataset('fake', fake_size=50)
        train, valid = split_dataset(data, 0.8, random_seed=0)

        self.assertEqual(len(train), 40)
        self.assertEqual(len(valid), 10)

    def test_max_images(self):
        data = make_dataset('fake', fake_size=50)
        train, valid = split_dataset(data, 0.5, random_seed=0, max_images=20)

        self.assertEqual(len(train) + len(valid), 20)

    def test_split_is_disjoint(self):
        data = make_dataset('fake', fake_size=50)
        train, valid = split_dataset(data, 0.8, random_seed=1)

        self.assertEqual(set(train.indices) & set(valid.indices), set())


class LoaderTest(unittest.TestCase):
    def test_train_loader_drops_incomplete_batches(self):
        loader = make_train_loader(batch_size=8, max_images=20, dataset='fake', num_workers=0)
        batches = [images for images, _ in loader]

        self.assertEqual(len(batches), 2)
        self.assertEqual(batches[0].shape, (8, 1, 28, 28))

    def test_train_and_valid_loaders(self):
        loaders = make_train_and_valid_loaders(batch_size=4, max_images=20, dataset='fake', num_workers=0)

        self.assertEqual(len(loaders.train.dataset), 16)
        self.assertEqual(len(loaders.valid.dataset), 4)

        images, _ = next(iter(loaders.valid))
        self.assertGreaterEqual(images.min().item(), 0.0)

    def test_check_loader(self):
        full = make_train_loader(batch_size=8, max_images=20, dataset='fake', num_workers=0)
        empty = make_train_loader(batch_size=8, max_images=4, dataset='fake', num_workers=0)

        self.assertIs(check_loader(full), full)
        with self.assertRaises(ValueError):
            check_loader(empty)

    def test_sample_dataset(self):
        data = make_dataset('fake', fake_size=10)

        self.assertEqual(sample_dataset(data, 4).shape, (4, 1, 28, 28))
        self.assertEqual(sample_dataset(data, 100).shape[0], 10)


class XorDatasetTest(unittest.TestCase):
    def test_labels_are_xor_of_signs(self):
        xs, ys = make_xor_dataset(n_per_cluster=20, spread=0.1)

        self.assertEqual(xs.shape, (80, 2))
        self.assertEqual(ys.shape, (80,))
        self.assertTrue(torch.equal(ys, ((xs[:, 0] > 0) != (xs[:, 1] > 0)).long()))

    def test_seeded(self):
        xs_1, _ = make_xor_dataset(random_seed=3)
        xs_2, _ = make_xor_dataset(random_seed=3)

        self.assertTrue(torch.equal(xs_1, xs_2))

    def test_tensor_loader(self):
        loader = make_tensor_loader(torch.randn(70, 2), batch_size=32)
        batches = [samples for samples, in loader]

        self.assertEqual(len(batches), 2)
        self.assertEqual(batches[0].shape, (32, 2))


if __name__ == '__main__':
    unittest.main()
