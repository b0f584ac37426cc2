"""
Configuration settings for the posture classifier.
"""
import torch

# --- Dataset ---
DATASET_DIR = r"data/ImagePosture"
DATASET_BASE = "imageposture"
# Archives are fetched from <DATASET_REMOTE_ROOT>/<base><size suffix>.tgz
DATASET_REMOTE_ROOT = "https://znanija.info/assets/files"
IMAGE_SIZE = 192 # (192 | 224)

# ImageNet statistics, applied after scaling pixels to [0, 1]
NORMALIZE_MEAN = [0.485, 0.456, 0.406]
NORMALIZE_STD = [0.229, 0.224, 0.225]

# --- Architecture ---
ARCHITECTURE = "posturenetv2" # (posturenetv2 | mobilenetv2)
CLASS_COUNT = 2
WIDTH_MULTIPLIER = 1.0

# --- Training hyperparameters ---
BATCH_SIZE = 64
EPOCHS = 10
LEARNING_RATE = 0.002
MOMENTUM = 0.9
PATIENCE = 7

# --- Device configuration ---
DEVICE = torch.device('cuda' if torch.cuda.is_available() else 'cpu')

# --- File paths ---
CHECKPOINT_PATH = "checkpoints/model2.ckpt"
PYTHON_CHECKPOINT_PATH = "models/posture_v1_python/cp.ckpt"
CLASS_MAPPING_PATH = "mappings/class_mapping.json"

# Root scope of every native checkpoint key
CHECKPOINT_SCOPE = "model"

# --- Data loader settings ---
NUM_WORKERS = 0
