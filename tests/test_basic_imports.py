import unittest
import torch
import llm_weight_loader
from llm_weight_loader.algorithms.quantization import GroupQuantizer
from llm_weight_loader.lazy import LazyTensor, batched_eval
from llm_weight_loader.runtime.quantized_layers import QuantizedLinear

class TestBasicImports(unittest.TestCase):
    def test_imports(self):
        """Test if core modules can be imported successfully."""
        self.assertIsNotNone(llm_weight_loader)
        self.assertIsNotNone(GroupQuantizer)
        self.assertIsNotNone(LazyTensor)
        self.assertIsNotNone(batched_eval)
        self.assertIsNotNone(QuantizedLinear)

    def test_torch_version(self):
        """Ensure torch is available and version is sufficient."""
        print(f"Torch version: {torch.__version__}")
        self.assertTrue(int(torch.__version__.split(".")[0]) >= 2)

if __name__ == '__main__':
    unittest.main()
