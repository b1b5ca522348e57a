"""Tests for the composed RBM layer."""
import pytest
import torch

from rbml import ConfigurationError, RBMDescriptor
from rbml.rbm import RBM, CDSamples


class TestRBM:

    def test_sizes(self):
        rbm = RBM(RBMDescriptor(num_visible=784, num_hidden=500))
        assert rbm.input_size() == 784
        assert rbm.output_size() == 500
        assert rbm.parameter_count() == 784 * 500
        assert str(rbm) == "RBM: 784(binary) -> 500(binary)"

    def test_state_dict_holds_parameters(self, small_descriptor):
        state = RBM(small_descriptor).state_dict()
        assert set(state) == {"params.w", "params.b", "params.c"}

    def test_train_batch_end_to_end(self, generator):
        """V=4, H=2, one all-ones vector, CD-3 with a fixed seed."""
        descriptor = RBMDescriptor(num_visible=4, num_hidden=2, batch_size=1)
        rbm = RBM(descriptor, generator=generator)
        metrics = rbm.train_batch(torch.ones(1, 4), k=3)
        samples = rbm.last_samples
        assert isinstance(samples, CDSamples)
        for tensor in [samples.h1_a, samples.v2_a, samples.h2_a]:
            assert ((tensor >= 0) & (tensor <= 1)).all()
        assert rbm.accumulator.compute(samples).w.shape == (4, 2)
        assert 0 <= metrics["reconstruction_error"] <= 1
        assert "free_energy" not in metrics

    def test_train_batch_changes_parameters(self, small_descriptor):
        rbm = RBM(small_descriptor)
        before = rbm.params.w.clone()
        rbm.train_batch(torch.ones(1, 4))
        assert not torch.equal(before, rbm.params.w)

    def test_dbn_only_keeps_no_samples(self):
        rbm = RBM(RBMDescriptor(num_visible=4, num_hidden=2, dbn_only=True))
        rbm.train_batch(torch.ones(3, 4))
        assert rbm.last_samples is None

    def test_free_energy_metric(self):
        rbm = RBM(RBMDescriptor(num_visible=4, num_hidden=2, free_energy=True))
        metrics = rbm.train_batch(torch.ones(2, 4))
        assert "free_energy" in metrics

    @pytest.mark.parametrize("shape", [(2, 5), (4,), (1, 2, 2)])
    def test_shape_mismatch(self, small_descriptor, shape):
        """Bad batch shapes are rejected before sampling."""
        rbm = RBM(small_descriptor)
        with pytest.raises(ConfigurationError):
            rbm.train_batch(torch.ones(*shape))

    def test_learning_reduces_reconstruction_error(self, binary_data):
        rbm = RBM(RBMDescriptor(num_visible=6, num_hidden=4, batch_size=8, learning_rate=0.5))
        initial = rbm.reconstruction_error(binary_data).item()
        for _ in range(50):
            for batch in binary_data.split(8):
                rbm.train_batch(batch)
        assert rbm.reconstruction_error(binary_data).item() < initial


class TestEnergy:

    def test_free_energy_matches_brute_force(self):
        """For a tiny binary RBM, F(v) = -log sum_h exp(-E(v, h))."""
        rbm = RBM(RBMDescriptor(num_visible=3, num_hidden=2))
        with torch.no_grad():
            rbm.params.b.copy_(torch.tensor([0.3, -0.2]))
            rbm.params.c.copy_(torch.tensor([0.1, 0.5, -0.4]))
        v = torch.tensor([[1., 0., 1.], [0., 1., 1.]])
        all_h = torch.tensor([[0., 0.], [0., 1.], [1., 0.], [1., 1.]])
        energies = torch.stack([rbm.energy(v, h.expand(2, 2)) for h in all_h], dim=1)
        expected = -torch.logsumexp(-energies, dim=1)
        assert torch.allclose(rbm.free_energy(v), expected, atol=1e-5)

    def test_softmax_hidden_free_energy(self):
        """One-hot hidden states: sum over the H possible states."""
        rbm = RBM(RBMDescriptor(num_visible=3, num_hidden=2, hidden_unit="softmax"))
        v = torch.tensor([[1., 0., 1.]])
        energies = torch.stack([rbm.energy(v, h[None]) for h in torch.eye(2)], dim=1)
        assert torch.allclose(rbm.free_energy(v), -torch.logsumexp(-energies, dim=1), atol=1e-5)

    def test_gaussian_visible_energy(self):
        rbm = RBM(RBMDescriptor(num_visible=2, num_hidden=1, visible_unit="gaussian"))
        with torch.no_grad():
            rbm.params.w.zero_()
            rbm.params.c.copy_(torch.tensor([1., -1.]))
        energy = rbm.energy(torch.tensor([[3., -1.]]), torch.zeros(1, 1))
        assert energy.item() == pytest.approx(2.)


class TestInference:

    def test_hidden_and_visible_probabilities(self, small_descriptor):
        rbm = RBM(small_descriptor)
        v = torch.rand(3, 4)
        h = rbm.to_hidden_p(v)
        assert torch.allclose(h, torch.sigmoid(v @ rbm.params.w + rbm.params.b))
        assert torch.equal(rbm(v), h)
        assert torch.allclose(rbm.to_visible_p(h), torch.sigmoid(h @ rbm.params.w.T + rbm.params.c))

    @pytest.mark.parametrize("shape", [(3, 4), (2,), (1, 1, 2)])
    def test_hidden_shape_mismatch(self, small_descriptor, shape):
        rbm = RBM(small_descriptor)
        with pytest.raises(ConfigurationError):
            rbm.to_visible_p(torch.ones(*shape))
        with pytest.raises(ConfigurationError):
            rbm.energy(torch.ones(1, 4), torch.ones(*shape))

    def test_reconstruct(self, small_descriptor):
        reconstruction = RBM(small_descriptor).reconstruct(torch.ones(5, 4), k=2)
        assert reconstruction.shape == (5, 4)
        assert ((reconstruction >= 0) & (reconstruction <= 1)).all()

    def test_generate(self):
        rbm = RBM(RBMDescriptor(num_visible=6, num_hidden=3))
        generated = rbm.generate(n_generations=7, chain_length=5)
        assert generated.shape == (7, 6)
        assert ((generated >= 0) & (generated <= 1)).all()

    def test_generate_gaussian(self):
        rbm = RBM(RBMDescriptor(num_visible=6, num_hidden=3, visible_unit="gaussian"))
        assert rbm.generate(n_generations=2, chain_length=3).shape == (2, 6)
