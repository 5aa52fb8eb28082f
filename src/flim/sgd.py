"""
Gradient-descent refinement of a layer's kernels.

The kernels act on the raw marker patches as ``relu?(W x + b)``. Training runs
in the marker-normalized input domain (patches standardized with the pooled
channel statistics) for a well-conditioned step size; weights and bias are
mapped back to the raw domain at the end, so the stored bank is applied to
unnormalized inputs exactly like at extraction time.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np
import torch
import torch.nn.functional as F

from .architecture import FlimLayer
from .backends import torch_device
from .exceptions import ResourceError, where
from .kernel_bank import KernelBank
from .patches import PatchSet, channel_statistics

logger = logging.getLogger(__name__)


def margin_loss(outputs: torch.Tensor, targets: torch.Tensor, margin: float) -> torch.Tensor:
    """
    Pull every output towards its label centroid and push label centroids
    at least ``margin`` apart (squared hinge).
    """
    classes = torch.unique(targets)
    centroids = torch.stack([outputs[targets == c].mean(dim=0) for c in classes])
    index = torch.searchsorted(classes, targets)
    pull = ((outputs - centroids[index]) ** 2).sum(dim=1).mean()
    if len(classes) < 2:
        return pull
    i, j = torch.triu_indices(len(classes), len(classes), offset=1, device=outputs.device)
    distances = torch.sqrt(((centroids[i] - centroids[j]) ** 2).sum(dim=1) + 1e-12)
    push = F.relu(margin - distances).pow(2).mean()
    return pull + push


def refine_kernels(weights: np.ndarray, bias: np.ndarray, patch_sets: Sequence[PatchSet],
                   layer: FlimLayer, strategy, stdev_factor: float, layer_index=None) -> KernelBank:
    """
    Refine raw-domain ``weights`` (K, F) and ``bias`` (K,) on the marker patches.

    ``strategy`` is a :class:`~flim.estimation.GradientDescent`.

    Raises
    ------
    ResourceError
        The loss became non-finite, or the device is unavailable.
    """
    device = torch_device(strategy.device)
    nchannels, adjacency_size = patch_sets[0].nchannels, patch_sets[0].adjacency_size
    raw = np.vstack([ps.raw for ps in patch_sets]).astype(np.float64)
    labels = np.concatenate([ps.labels for ps in patch_sets])
    classes, targets = np.unique(labels, return_inverse=True)

    mean_c, std_c = channel_statistics(raw, nchannels)
    mu = np.tile(mean_c, adjacency_size)
    sigma = np.tile(std_c + stdev_factor, adjacency_size)
    # W x + b == (W * sigma) x_n + (b + W mu), with x_n = (x - mu) / sigma
    weights_n = weights * sigma
    bias_n = bias + weights @ mu

    torch.manual_seed(strategy.seed)
    generator = torch.Generator().manual_seed(strategy.seed)
    X = torch.as_tensor((raw - mu) / sigma, dtype=torch.float32, device=device)
    y = torch.as_tensor(targets, dtype=torch.long, device=device)
    W = torch.nn.Parameter(torch.as_tensor(weights_n, dtype=torch.float32, device=device))
    b = torch.nn.Parameter(torch.as_tensor(bias_n, dtype=torch.float32, device=device))
    params = [W, b]
    head = None
    if strategy.loss == "softmax":
        head = torch.nn.Linear(W.shape[0], len(classes)).to(device)
        params += list(head.parameters())
    optimizer = torch.optim.SGD(params, lr=strategy.learning_rate, momentum=strategy.momentum)

    n = len(X)
    best, stale, epoch_loss = math.inf, 0, math.nan
    for epoch in range(strategy.max_epochs):
        order = torch.randperm(n, generator=generator).to(device)
        total = 0.0
        for start in range(0, n, strategy.batch_size):
            idx = order[start:start + strategy.batch_size]
            out = X[idx] @ W.T + b
            if layer.relu:
                out = F.relu(out)
            if head is not None:
                loss = F.cross_entropy(head(out), y[idx])
            else:
                loss = margin_loss(out, y[idx], strategy.margin)
            if not torch.isfinite(loss):
                raise ResourceError(f"gradient descent diverged at epoch {epoch}{where(layer_index)}")
            optimizer.zero_grad()
            loss.backward()
            optimizer.step()
            total += loss.item() * len(idx)
        epoch_loss = total / n
        if best - epoch_loss < strategy.tol:
            stale += 1
        else:
            stale = 0
        best = min(best, epoch_loss)
        if stale >= strategy.patience:
            logger.info("loss plateau at epoch %d (loss %.6f)%s", epoch, epoch_loss, where(layer_index))
            break
    else:
        logger.info("stopped after %d epochs (loss %.6f)%s", strategy.max_epochs, epoch_loss, where(layer_index))

    weights_n = W.detach().cpu().double().numpy()
    bias_n = b.detach().cpu().double().numpy()
    weights = weights_n / sigma
    bias = bias_n - weights @ mu
    return KernelBank(weights=weights, bias=bias)
