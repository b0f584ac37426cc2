"""
Posture Classification Inference
Classify a single image with a model read from a native checkpoint
"""
import matplotlib.pyplot as plt
import numpy as np
import torch
from PIL import Image

from config import IMAGE_SIZE
from data import make_transform


def preprocess_image(image_path, image_size=IMAGE_SIZE):
    """
    Load and preprocess an image for model inference, with the transform used in training.

    Args:
        image_path (str): Path to the image file
        image_size (int): Square width/height of the model input

    Returns:
        torch.Tensor: Preprocessed image tensor with a batch dimension
        PIL.Image: Original image for display
    """
    original_image = Image.open(image_path).convert("RGB")
    preprocess = make_transform(image_size)
    return preprocess(original_image).unsqueeze(0), original_image


def class_names_from_mapping(class_mapping, count):
    if class_mapping and "classes" in class_mapping:
        return list(class_mapping["classes"])
    if class_mapping and "idx_to_class" in class_mapping:
        return [class_mapping["idx_to_class"][str(i)] for i in range(count)]
    return [str(i) for i in range(count)]


def predict_pose(model, image_tensor, class_mapping, device):
    """
    Predict the posture class of a preprocessed image tensor.

    Returns:
        tuple: (predicted_class, confidence, all_probabilities)
    """
    model.eval()

    with torch.no_grad():
        outputs = model(image_tensor.to(device))
        probabilities = torch.nn.functional.softmax(outputs, dim=1)
        confidence, predicted_idx = torch.max(probabilities, 1)

    all_probs = probabilities.squeeze(0).cpu().numpy()
    class_names = class_names_from_mapping(class_mapping, len(all_probs))
    return class_names[predicted_idx.item()], confidence.item(), all_probs


def display_results(image, predicted_class, confidence, all_probabilities, class_mapping):
    """Display the image and the probability of every class."""
    class_names = class_names_from_mapping(class_mapping, len(all_probabilities))

    plt.figure(figsize=(15, 6))

    plt.subplot(1, 2, 1)
    plt.imshow(image)
    plt.title(f"Input Image\nPredicted: {predicted_class}\nConfidence: {confidence:.1%}",
              fontsize=12, fontweight='bold')
    plt.axis('off')

    plt.subplot(1, 2, 2)
    bars = plt.bar(class_names, np.asarray(all_probabilities) * 100)
    bars[class_names.index(predicted_class)].set_color('red')
    plt.title('Posture Classification Probabilities', fontweight='bold')
    plt.xlabel('Posture Class')
    plt.ylabel('Probability (%)')
    plt.ylim(0, 100)
    for bar, prob in zip(bars, all_probabilities):
        plt.text(bar.get_x() + bar.get_width()/2., bar.get_height() + 1,
                 f'{prob*100:.1f}%', ha='center', va='bottom', fontsize=9)

    plt.tight_layout()
    plt.show()


def print_prediction(predicted_class, confidence, all_probabilities, class_mapping):
    print("\n🎯 PREDICTION RESULTS")
    print("=" * 30)
    print(f"Predicted: {predicted_class}")
    print(f"Confidence: {confidence:.1%}")
    print("\nAll Class Probabilities:")
    for class_name, prob in zip(class_names_from_mapping(class_mapping, len(all_probabilities)),
                                all_probabilities):
        marker = "🎯" if class_name == predicted_class else "  "
        print(f"{marker} {class_name}: {prob:.1%}")
