"""Tests for turning CD statistics into parameter updates."""
import pytest
import torch

from rbml import NumericDivergence, RBMDescriptor
from rbml.rbm import CDSamples, GradientAccumulator, Gradients, ParameterStore


def make_samples(v1: torch.Tensor,
                 h1: torch.Tensor,
                 v2: torch.Tensor,
                 h2: torch.Tensor,
                 v2_s: torch.Tensor | None = None) -> CDSamples:
    return CDSamples(v1, h1, h1, v2, v2 if v2_s is None else v2_s, h2, h2)


def descriptor(**options) -> RBMDescriptor:
    return RBMDescriptor(num_visible=3, num_hidden=2, batch_size=2, learning_rate=0.1, **options)


@pytest.fixture
def samples():
    v1 = torch.tensor([[1., 0., 1.], [0., 1., 1.]])
    h1 = torch.tensor([[0.9, 0.2], [0.3, 0.8]])
    v2 = torch.tensor([[0.8, 0.1, 0.6], [0.2, 0.7, 0.9]])
    h2 = torch.tensor([[0.7, 0.3], [0.4, 0.6]])
    return make_samples(v1, h1, v2, h2)


class TestCompute:

    def test_positive_minus_negative(self, samples):
        gradients = GradientAccumulator(descriptor()).compute(samples)
        expected_w = (samples.v1.T @ samples.h1_a - samples.v2_a.T @ samples.h2_a) / 2
        assert torch.allclose(gradients.w, expected_w)
        assert torch.allclose(gradients.b, (samples.h1_a - samples.h2_a).mean(dim=0))
        assert torch.allclose(gradients.c, (samples.v1 - samples.v2_a).mean(dim=0))

    def test_negative_phase_samples_policy(self, samples):
        v2_s = torch.tensor([[1., 0., 1.], [0., 1., 1.]])
        samples = samples._replace(v2_s=v2_s)
        gradients = GradientAccumulator(descriptor(negative_phase="samples")).compute(samples)
        expected_w = (samples.v1.T @ samples.h1_a - v2_s.T @ samples.h2_a) / 2
        assert torch.allclose(gradients.w, expected_w)
        assert torch.allclose(gradients.c, torch.zeros(3))

    def test_identical_phases_give_zero_update(self):
        """No momentum, decay or sparsity: equal statistics mean nothing changes."""
        v = torch.tensor([[1., 0., 1.], [0., 1., 0.]])
        h = torch.tensor([[0.6, 0.1], [0.2, 0.9]])
        accumulator = GradientAccumulator(descriptor())
        params = ParameterStore(3, 2)
        before = [param.clone() for param in params.parameters_tuple()]
        gradients = accumulator.step(params, make_samples(v, h, v, h))
        for grad in gradients:
            assert torch.equal(grad, torch.zeros_like(grad))
        for old, new in zip(before, params.parameters_tuple()):
            assert torch.equal(old, new)


class TestDecay:

    def params(self) -> ParameterStore:
        params = ParameterStore(3, 2)
        params.update(torch.zeros(3, 2), torch.tensor([1., -1.]), torch.tensor([2., 0., -2.]))
        return params

    def zero_gradients(self) -> Gradients:
        return Gradients(torch.zeros(3, 2), torch.zeros(2), torch.zeros(3))

    def test_l2(self):
        params = self.params()
        gradients = GradientAccumulator(descriptor(decay_type="l2", weight_cost=0.5)).apply_decay(
            self.zero_gradients(), params)
        assert torch.allclose(gradients.w, -0.5 * params.w)
        assert torch.equal(gradients.b, torch.zeros(2))

    def test_l1(self):
        params = self.params()
        gradients = GradientAccumulator(descriptor(decay_type="l1", l1_weight_cost=0.1)).apply_decay(
            self.zero_gradients(), params)
        assert torch.allclose(gradients.w, -0.1 * torch.sign(params.w))

    def test_full_variants_decay_biases(self):
        params = self.params()
        gradients = GradientAccumulator(descriptor(decay_type="l2_full", weight_cost=0.5)).apply_decay(
            self.zero_gradients(), params)
        assert torch.allclose(gradients.b, torch.tensor([-0.5, 0.5]))
        assert torch.allclose(gradients.c, torch.tensor([-1., 0., 1.]))

    def test_none(self):
        gradients = self.zero_gradients()
        assert GradientAccumulator(descriptor()).apply_decay(gradients, self.params()) is gradients


class TestSparsity:

    def test_global_target(self, samples):
        accumulator = GradientAccumulator(descriptor(sparsity_method="global_target", sparsity_target=0.1,
                                                     sparsity_cost=2.))
        base = accumulator.compute(samples)
        gradients = accumulator.apply_sparsity(base, samples)
        penalty = 2. * (samples.h2_a.mean() - 0.1)
        assert torch.allclose(gradients.w, base.w - penalty)
        assert torch.allclose(gradients.b, base.b - penalty)
        assert torch.equal(gradients.c, base.c)

    def test_local_target(self, samples):
        accumulator = GradientAccumulator(descriptor(sparsity_method="local_target", sparsity_target=0.1))
        base = accumulator.compute(samples)
        gradients = accumulator.apply_sparsity(base, samples)
        penalty = samples.h2_a.mean(dim=0) - 0.1
        assert torch.allclose(gradients.b, base.b - penalty)
        assert torch.allclose(gradients.w, base.w - penalty[None, :])

    def test_moving_average(self, samples):
        accumulator = GradientAccumulator(descriptor(sparsity_method="local_target", decay_rate=0.9))
        accumulator.apply_sparsity(accumulator.compute(samples), samples)
        first = accumulator.q_local.clone()
        zero_hidden = samples._replace(h2_a=torch.zeros(2, 2))
        accumulator.apply_sparsity(accumulator.compute(zero_hidden), zero_hidden)
        assert torch.allclose(accumulator.q_local, 0.9 * first)
        accumulator.reset_sparsity()
        assert accumulator.q_local is None

    def test_lee_needs_simple_bias_mode(self, samples):
        accumulator = GradientAccumulator(descriptor(sparsity_method="lee"))
        base = accumulator.compute(samples)
        assert accumulator.apply_sparsity(base, samples) is base

    def test_lee_simple(self, samples):
        accumulator = GradientAccumulator(descriptor(sparsity_method="lee", bias_mode="simple", pbias=0.05,
                                                     pbias_lambda=3.))
        base = accumulator.compute(samples)
        gradients = accumulator.apply_sparsity(base, samples)
        assert torch.allclose(gradients.b, base.b + 3. * (0.05 - samples.h2_a.mean(dim=0)))
        assert torch.equal(gradients.w, base.w)


class TestClip:

    def big_gradients(self) -> Gradients:
        return Gradients(torch.full((3, 2), 10.), torch.tensor([0.1, -0.1]), torch.tensor([-20., 0., 1.]))

    def test_disabled(self):
        gradients = self.big_gradients()
        assert GradientAccumulator(descriptor()).clip(gradients) is gradients

    def test_value(self):
        clipped = GradientAccumulator(descriptor(clip_gradients=True, clip_mode="value", gradient_clip=2.)).clip(
            self.big_gradients())
        assert torch.equal(clipped.w, torch.full((3, 2), 2.))
        assert torch.equal(clipped.b, torch.tensor([0.1, -0.1]))
        assert torch.equal(clipped.c, torch.tensor([-2., 0., 1.]))

    def test_norm(self):
        clipped = GradientAccumulator(descriptor(clip_gradients=True, clip_mode="norm", gradient_clip=5.)).clip(
            self.big_gradients())
        assert torch.linalg.vector_norm(clipped.w).item() == pytest.approx(5.)
        assert torch.equal(clipped.b, torch.tensor([0.1, -0.1]))

    def test_global_norm(self):
        clipped = GradientAccumulator(descriptor(clip_gradients=True, clip_mode="global_norm",
                                                 gradient_clip=1.)).clip(self.big_gradients())
        total = torch.sqrt(sum((grad**2).sum() for grad in clipped))
        assert total.item() == pytest.approx(1., rel=1e-5)


class TestStep:

    def test_learning_rate_scales_update(self, samples):
        params = ParameterStore(3, 2)
        w = params.w.clone()
        accumulator = GradientAccumulator(descriptor())
        gradients = accumulator.step(params, samples)
        assert torch.allclose(params.w, w + 0.1 * gradients.w)
        assert torch.allclose(params.b, 0.1 * gradients.b)
        assert torch.allclose(params.c, 0.1 * gradients.c)

    def test_learning_rate_override(self, samples):
        params = ParameterStore(3, 2)
        gradients = GradientAccumulator(descriptor()).step(params, samples, learning_rate=1.)
        assert torch.allclose(params.b, gradients.b)

    def test_momentum(self, samples):
        """Second increment is momentum * first + lr * grad."""
        params = ParameterStore(3, 2)
        accumulator = GradientAccumulator(descriptor(momentum=True))
        assert accumulator.momentum == 0.5
        gradients = accumulator.step(params, samples)
        first_b = params.b.clone()
        accumulator.step(params, samples)
        assert torch.allclose(params.b - first_b, 0.5 * 0.1 * gradients.b + 0.1 * gradients.b)
        accumulator.reset_momentum()
        assert accumulator.w_inc is None

    def test_non_finite_gradients_leave_parameters_alone(self, samples):
        params = ParameterStore(3, 2)
        before = params.w.clone()
        broken = samples._replace(h2_a=torch.full((2, 2), float("nan")))
        with pytest.raises(NumericDivergence) as info:
            GradientAccumulator(descriptor()).step(params, broken)
        assert info.value.where == "gradients"
        assert torch.equal(params.w, before)

    def test_non_finite_parameters(self, samples):
        params = ParameterStore(3, 2)
        params.update(torch.zeros(3, 2), torch.tensor([float("inf"), 0.]))
        with pytest.raises(NumericDivergence) as info:
            GradientAccumulator(descriptor()).step(params, samples)
        assert info.value.where == "parameters"

    @pytest.mark.parametrize("method", ["global_target", "local_target", "lee"])
    def test_divergence_keeps_sparsity_averages(self, samples, method):
        """A NaN batch leaves the moving averages alone, so the next clean batch trains normally."""
        params = ParameterStore(3, 2)
        accumulator = GradientAccumulator(descriptor(sparsity_method=method, bias_mode="simple"))
        accumulator.step(params, samples)
        q_global, q_local = accumulator.q_global, accumulator.q_local

        broken = samples._replace(h2_a=torch.full((2, 2), float("nan")))
        with pytest.raises(NumericDivergence):
            accumulator.step(params, broken)
        assert accumulator.q_global is q_global
        assert accumulator.q_local is q_local

        accumulator.step(params, samples)
        assert params.is_finite()

    def test_divergence_on_first_batch_keeps_averages_empty(self, samples):
        accumulator = GradientAccumulator(descriptor(sparsity_method="local_target"))
        with pytest.raises(NumericDivergence):
            accumulator.step(ParameterStore(3, 2), samples._replace(h2_a=torch.full((2, 2), float("nan"))))
        assert accumulator.q_local is None
