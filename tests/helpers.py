from config import Config


def make_config(results_dir: str, **overrides):
    """A small cpu configuration on fake data, writing into `results_dir`."""
    settings = dict(
        run_folder='test_run',
        results_dir=results_dir,
        dataset='fake',
        device='cpu',
        num_workers=0,
        batch_size=8,
        epochs=1,
        max_images=32,
        latent_dim=16,
        verbose_freq=2,
        output_x=4,
        output_y=4,
        hidden_dim=32,
        z_dim=2,
        sample_size=4,
        eval_freq=1,
    )
    settings.update(overrides)

    return Config(**settings)
